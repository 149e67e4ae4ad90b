"""Classify raw webhook bodies into typed lifecycle messages or legacy events.

Classification pipeline::

    raw bytes
      │
      ├─ JSON parse failure         → ValidationError("parse_error")
      ├─ body not an object         → ValidationError("schema_mismatch")
      ├─ lifecycle missing/unknown  → ValidationError("unsupported_lifecycle")
      ├─ <lifecycle>Data missing    → LifecycleMessage(data=None)
      └─ valid                      → LifecycleMessage(data=<payload>)

Field-level checks (missing challenge, missing token) are left to the
lifecycle handler so each kind can answer with its own status.
"""

from __future__ import annotations

from typing import Any, Optional

import orjson

from smartapp_bridge.errors import ValidationError
from smartapp_bridge.models import (
    ConfigurationData,
    ConfirmationData,
    EventData,
    InstallData,
    InstalledApp,
    Lifecycle,
    LifecycleMessage,
    NormalizedEvent,
    PingData,
    UninstallData,
)

# ``<lifecycle>Data`` key for each kind. UPDATE reuses the INSTALL shape.
DATA_KEYS = {
    Lifecycle.PING: "pingData",
    Lifecycle.CONFIRMATION: "confirmationData",
    Lifecycle.CONFIGURATION: "configurationData",
    Lifecycle.INSTALL: "installData",
    Lifecycle.UPDATE: "updateData",
    Lifecycle.EVENT: "eventData",
    Lifecycle.UNINSTALL: "uninstallData",
}


def loads_object(raw: str | bytes) -> dict:
    """Parse *raw* as JSON and require a top-level object."""
    try:
        msg = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ValidationError(f"parse_error: {exc}") from exc
    if not isinstance(msg, dict):
        raise ValidationError("schema_mismatch: request body must be a JSON object")
    return msg


def classify(raw: str | bytes) -> LifecycleMessage:
    """Classify a single lifecycle request body.

    Parameters
    ----------
    raw:
        The HTTP request body.

    Returns
    -------
    LifecycleMessage
        The typed message. ``data`` is ``None`` when the payload object for
        the declared lifecycle is absent.

    Raises
    ------
    ValidationError
        When the body is not JSON, not an object, or declares no supported
        lifecycle.
    """
    msg = loads_object(raw)

    try:
        lifecycle = Lifecycle(msg.get("lifecycle"))
    except (TypeError, ValueError):
        raise ValidationError(
            f"unsupported_lifecycle: {msg.get('lifecycle')!r}"
        ) from None

    payload = msg.get(DATA_KEYS[lifecycle])
    data = None
    if isinstance(payload, dict):
        data = _PARSERS[lifecycle](payload)

    return LifecycleMessage(
        lifecycle=lifecycle,
        data=data,
        app_id=_str_or_none(msg.get("appId")),
        execution_id=_str_or_none(msg.get("executionId")),
    )


def classify_legacy_event(raw: str | bytes) -> NormalizedEvent:
    """Parse a relay-delivered event body (``{deviceId, componentId, ...}``)."""
    msg = loads_object(raw)
    device_id = msg.get("deviceId")
    if not isinstance(device_id, str) or not device_id:
        raise ValidationError("missing_fields: event is missing deviceId")
    return NormalizedEvent(
        device_id=device_id,
        component_id=msg.get("componentId") or "main",
        capability=msg.get("capability") or "",
        attribute=msg.get("attribute") or "",
        value=msg.get("value"),
    )


# ── payload parsers ─────────────────────────────────────────────────


def _installed_app(obj: Any) -> Optional[InstalledApp]:
    if not isinstance(obj, dict):
        return None
    return InstalledApp(
        installed_app_id=_str_or_none(obj.get("installedAppId")),
        location_id=_str_or_none(obj.get("locationId")),
    )


def _ping(payload: dict) -> PingData:
    return PingData(challenge=_str_or_none(payload.get("challenge")))


def _confirmation(payload: dict) -> ConfirmationData:
    return ConfirmationData(
        confirmation_url=_str_or_none(payload.get("confirmationUrl")),
        app_id=_str_or_none(payload.get("appId")),
    )


def _configuration(payload: dict) -> ConfigurationData:
    return ConfigurationData(
        phase=_str_or_none(payload.get("phase")),
        page_id=_str_or_none(payload.get("pageId")),
        installed_app_id=_str_or_none(payload.get("installedAppId")),
    )


def _install(payload: dict) -> InstallData:
    return InstallData(
        auth_token=_str_or_none(payload.get("authToken")),
        refresh_token=_str_or_none(payload.get("refreshToken")),
        installed_app=_installed_app(payload.get("installedApp")) or InstalledApp(),
    )


def _event(payload: dict) -> EventData:
    events = payload.get("events")
    if not isinstance(events, list):
        raise ValidationError("missing_fields: eventData.events must be a list")
    return EventData(
        auth_token=_str_or_none(payload.get("authToken")),
        installed_app=_installed_app(payload.get("installedApp")),
        events=events,
    )


def _uninstall(payload: dict) -> UninstallData:
    return UninstallData(installed_app=_installed_app(payload.get("installedApp")))


_PARSERS = {
    Lifecycle.PING: _ping,
    Lifecycle.CONFIRMATION: _confirmation,
    Lifecycle.CONFIGURATION: _configuration,
    Lifecycle.INSTALL: _install,
    Lifecycle.UPDATE: _install,
    Lifecycle.EVENT: _event,
    Lifecycle.UNINSTALL: _uninstall,
}


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None
