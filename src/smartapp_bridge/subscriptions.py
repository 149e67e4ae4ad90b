"""Remote subscription API client and the reconciliation algorithm.

Reconciliation keeps the platform's DEVICE subscriptions a superset of the
local registration while issuing as few calls as possible::

    remote   = {s.device_id for s in list() if s.source_type == DEVICE}
    missing  = registration − remote
    create(d) for d in missing        # 409 counts as success

Routine sync never deletes. Only UPDATE drops everything and rebuilds with
:meth:`SubscriptionReconciler.recreate_all`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Protocol

import aiohttp
import orjson

from smartapp_bridge.credentials import CredentialStore
from smartapp_bridge.errors import RemoteConflict, RemoteFailure
from smartapp_bridge.models import Credentials, RemoteSubscription, SourceType, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.smartthings.com"
DEFAULT_TIMEOUT_SECONDS = 30.0


class SubscriptionApi(Protocol):
    """The subset of the platform API the reconciler needs."""

    async def list_subscriptions(self, creds: Credentials) -> list[RemoteSubscription]: ...

    async def create_subscription(self, creds: Credentials, body: dict) -> dict: ...

    async def delete_all_subscriptions(self, creds: Credentials) -> None: ...


class SmartThingsClient:
    """Thin aiohttp client for ``/installedapps/{id}/subscriptions``.

    Every call carries a bounded timeout; timeouts and transport errors are
    raised as retryable :class:`RemoteFailure`.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def list_subscriptions(self, creds: Credentials) -> list[RemoteSubscription]:
        data = await self._request("GET", self._subscriptions_url(creds), creds)
        items = data.get("items") if isinstance(data, dict) else None
        return [_to_subscription(item) for item in items or [] if isinstance(item, dict)]

    async def create_subscription(self, creds: Credentials, body: dict) -> dict:
        return await self._request("POST", self._subscriptions_url(creds), creds, body)

    async def delete_all_subscriptions(self, creds: Credentials) -> None:
        await self._request("DELETE", self._subscriptions_url(creds), creds)

    async def fetch(self, url: str) -> int:
        """GET an arbitrary URL (used for CONFIRMATION) and return its status."""
        try:
            async with self._get_session().get(url) as resp:
                await resp.read()
                return resp.status
        except asyncio.TimeoutError as exc:
            raise RemoteFailure(f"GET {url} timed out", retryable=True) from exc
        except aiohttp.ClientError as exc:
            raise RemoteFailure(f"GET {url} failed: {exc}", retryable=True) from exc

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ── internal ────────────────────────────────────────────────────

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _subscriptions_url(self, creds: Credentials) -> str:
        return f"{self._api_url}/installedapps/{creds.installed_app_id}/subscriptions"

    async def _request(
        self,
        method: str,
        url: str,
        creds: Credentials,
        body: Optional[dict] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {creds.auth_token}"}
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = orjson.dumps(body)

        try:
            async with self._get_session().request(
                method, url, headers=headers, data=data
            ) as resp:
                raw = await resp.read()
                if resp.status == 409:
                    raise RemoteConflict(f"{method} {url}: already exists")
                if resp.status >= 400:
                    raise RemoteFailure(
                        f"{method} {url} returned {resp.status}: {_excerpt(raw)}",
                        status=resp.status,
                        retryable=resp.status == 429 or resp.status >= 500,
                    )
        except asyncio.TimeoutError as exc:
            raise RemoteFailure(f"{method} {url} timed out", retryable=True) from exc
        except aiohttp.ClientError as exc:
            raise RemoteFailure(f"{method} {url} failed: {exc}", retryable=True) from exc

        if not raw:
            return {}
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return {}


class SubscriptionReconciler:
    """Creates and deletes remote subscriptions for the current installation.

    Parameters
    ----------
    api:
        Remote subscription API.
    store:
        Source of the current credentials.
    name_prefix:
        Prefix for generated subscription names.
    """

    def __init__(
        self,
        api: SubscriptionApi,
        store: CredentialStore,
        name_prefix: str = "bridge",
    ) -> None:
        self._api = api
        self._store = store
        self._prefix = name_prefix

    async def remote_device_ids(self) -> set[str]:
        """Device ids that already have a DEVICE subscription.

        A failed list call is logged and reads as "none", which makes the
        caller attempt every create and absorb the conflicts.
        """
        creds = self._installed_credentials()
        if creds is None:
            return set()
        try:
            subscriptions = await self._api.list_subscriptions(creds)
        except RemoteFailure as exc:
            logger.error("Failed to list existing subscriptions: %s", exc)
            return set()

        ids = {
            s.device_id
            for s in subscriptions
            if s.source_type == SourceType.DEVICE.value and s.device_id
        }
        logger.info("Found %d existing device subscriptions", len(ids))
        return ids

    async def reconcile(self, device_ids: Iterable[str]) -> SyncResult:
        """Create subscriptions only for devices the remote does not know yet."""
        wanted = list(dict.fromkeys(device_ids))
        if self._installed_credentials() is None:
            logger.error("Cannot sync subscriptions: missing credentials")
            return SyncResult()
        if not wanted:
            logger.warning("No device ids registered for subscription")
            return SyncResult()

        existing = await self.remote_device_ids()
        missing = [d for d in wanted if d not in existing]
        if not missing:
            logger.info(
                "All %d devices already have subscriptions, no changes needed",
                len(wanted),
            )
            return SyncResult()

        logger.info(
            "Creating subscriptions for %d new devices (%d already exist)",
            len(missing),
            len(existing),
        )
        return await self.create_all(missing)

    async def create_all(self, device_ids: Iterable[str]) -> SyncResult:
        """Create one DEVICE subscription per id, continuing past failures."""
        result = SyncResult()
        if self._installed_credentials() is None:
            logger.error("Cannot create subscriptions: missing credentials")
            return result

        for device_id in dict.fromkeys(device_ids):
            result.attempted += 1
            try:
                created = await self.create_device_subscription(device_id)
            except RemoteFailure as exc:
                result.failed += 1
                logger.error("Failed to create subscription for device %s: %s", device_id, exc)
                continue
            if created:
                result.created += 1
            else:
                result.already_present += 1

        logger.info(
            "Device subscriptions: %d/%d succeeded (%d created, %d already present)",
            result.created + result.already_present,
            result.attempted,
            result.created,
            result.already_present,
        )
        return result

    async def recreate_all(self, device_ids: Iterable[str]) -> SyncResult:
        """Delete every subscription of the installation, then rebuild."""
        await self.delete_all()
        result = await self.create_all(device_ids)
        await self.ensure_lifecycle_subscription()
        return result

    async def create_device_subscription(self, device_id: str) -> bool:
        """Subscribe to every attribute of *device_id*.

        Returns True when created, False when it already existed.

        Raises
        ------
        RemoteFailure
            For any failure other than "already exists", or when the app is
            not installed.
        """
        creds = self._installed_credentials()
        if creds is None:
            raise RemoteFailure("not installed: no credentials for subscription create")

        body = {
            "sourceType": SourceType.DEVICE.value,
            "device": {
                "deviceId": device_id,
                "componentId": "*",
                "capability": "*",
                "attribute": "*",
                "stateChangeOnly": True,
                "subscriptionName": f"{self._prefix}_{device_id[:8]}",
            },
        }
        try:
            await self._api.create_subscription(creds, body)
        except RemoteConflict:
            logger.debug("Subscription already exists for device %s", device_id)
            return False
        logger.info("Created subscription for device %s", device_id)
        return True

    async def ensure_lifecycle_subscription(self) -> bool:
        """Make sure the location-wide device lifecycle subscription exists.

        Failures are logged, never raised.
        """
        creds = self._installed_credentials()
        if creds is None or not creds.location_id:
            logger.error("Cannot create device lifecycle subscription: missing credentials")
            return False

        body = {
            "sourceType": SourceType.DEVICE_LIFECYCLE.value,
            "deviceLifecycle": {
                "locationId": creds.location_id,
                "subscriptionName": f"{self._prefix}_device_lifecycle",
            },
        }
        try:
            await self._api.create_subscription(creds, body)
        except RemoteConflict:
            logger.debug("Device lifecycle subscription already exists")
            return True
        except RemoteFailure as exc:
            logger.error("Failed to create device lifecycle subscription: %s", exc)
            return False
        logger.info("Created device lifecycle subscription")
        return True

    async def create_capability_subscription(self, capability: str) -> bool:
        """Subscribe to *capability* on every device of the location.

        Not used by the lifecycle flow; kept for callers that want
        location-wide capability events instead of per-device subscriptions.
        """
        creds = self._installed_credentials()
        if creds is None or not creds.location_id:
            logger.error("Cannot create capability subscription: missing credentials")
            return False

        body = {
            "sourceType": SourceType.CAPABILITY.value,
            "capability": {
                "locationId": creds.location_id,
                "capability": capability,
                "attribute": "*",
                "value": "*",
                "stateChangeOnly": True,
                "subscriptionName": f"{self._prefix}_capability_{capability}",
            },
        }
        try:
            await self._api.create_subscription(creds, body)
        except RemoteConflict:
            return True
        except RemoteFailure as exc:
            logger.error("Failed to create capability subscription for %s: %s", capability, exc)
            return False
        logger.info("Created capability subscription for %s", capability)
        return True

    async def delete_all(self) -> bool:
        creds = self._installed_credentials()
        if creds is None:
            logger.error("Cannot delete subscriptions: missing credentials")
            return False
        try:
            await self._api.delete_all_subscriptions(creds)
        except (RemoteConflict, RemoteFailure) as exc:
            logger.error("Failed to delete subscriptions: %s", exc)
            return False
        logger.info("Deleted all existing subscriptions")
        return True

    def _installed_credentials(self) -> Optional[Credentials]:
        creds = self._store.credentials
        if creds is None or not creds.is_installed:
            return None
        return creds


def _to_subscription(item: dict) -> RemoteSubscription:
    source_type = item.get("sourceType") or ""
    nested = item.get(_NESTED_KEYS.get(source_type, "")) or {}
    return RemoteSubscription(
        source_type=source_type,
        subscription_name=nested.get("subscriptionName"),
        device_id=nested.get("deviceId"),
        subscription_id=item.get("id"),
    )


_NESTED_KEYS = {
    SourceType.DEVICE.value: "device",
    SourceType.DEVICE_LIFECYCLE.value: "deviceLifecycle",
    SourceType.CAPABILITY.value: "capability",
}


def _excerpt(raw: bytes, limit: int = 300) -> str:
    return raw[:limit].decode("utf-8", errors="replace")
