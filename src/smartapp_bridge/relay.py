"""Long-poll client for the legacy event relay.

Each poll is a blocking ``POST {url}/clientrequest`` that the relay holds
open for up to ``poll_timeout_ms`` and then answers with::

    {"timeout": bool, "events": [{deviceId, componentId, capability, attribute, value}, ...]}
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import aiohttp
import orjson

from smartapp_bridge.config import RelayConfig
from smartapp_bridge.errors import RemoteFailure
from smartapp_bridge.models import NormalizedEvent

logger = logging.getLogger(__name__)


class RelayClient:
    """Fetches batches of normalized events from the relay service."""

    def __init__(self, config: RelayConfig) -> None:
        if not config.url:
            raise ValueError("relay.url is required when direct webhooks are disabled")
        self._url = config.url.rstrip("/") + "/clientrequest"
        self._token = config.token
        self._poll_timeout_ms = config.poll_timeout_ms
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout_ms / 1000.0)
        self._session: Optional[aiohttp.ClientSession] = None

    async def poll(self, device_ids: Iterable[str]) -> list[NormalizedEvent]:
        """Run one long-poll round and return the events it delivered.

        Raises
        ------
        RemoteFailure
            On a non-2xx answer, a transport error, a timeout, or an
            unparseable body.
        """
        body = {"timeout": self._poll_timeout_ms, "deviceIds": list(device_ids)}
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Keep-Alive": "timeout=120, max=1000",
        }
        try:
            async with self._get_session().post(
                self._url, data=orjson.dumps(body), headers=headers
            ) as resp:
                raw = await resp.read()
                if resp.status >= 400:
                    raise RemoteFailure(
                        f"relay returned {resp.status}", status=resp.status, retryable=True
                    )
        except asyncio.TimeoutError as exc:
            raise RemoteFailure("relay poll timed out", retryable=True) from exc
        except aiohttp.ClientError as exc:
            raise RemoteFailure(f"relay poll failed: {exc}", retryable=True) from exc

        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise RemoteFailure(f"relay sent invalid JSON: {exc}") from exc

        events = payload.get("events") if isinstance(payload, dict) else None
        return [e for e in (_to_event(item) for item in events or []) if e is not None]

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session


def _to_event(item) -> Optional[NormalizedEvent]:
    if not isinstance(item, dict) or not item.get("deviceId"):
        logger.debug("Skipping relay item without deviceId")
        return None
    return NormalizedEvent(
        device_id=item["deviceId"],
        component_id=item.get("componentId") or "main",
        capability=item.get("capability") or "",
        attribute=item.get("attribute") or "",
        value=item.get("value"),
    )
