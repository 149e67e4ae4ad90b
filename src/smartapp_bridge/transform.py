"""Transform platform event items into normalized bridge events.

Each item of an EVENT message's ``events`` list becomes one of:

    DEVICE_EVENT            → NormalizedEvent
    DEVICE_LIFECYCLE_EVENT  → DeviceLifecycleEvent
    anything else           → None  (logged by the caller, then ignored)

No state is kept; duplicates pass through untouched.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional, Union

import orjson

from smartapp_bridge.models import DeviceLifecycleEvent, EventType, NormalizedEvent

BridgeEvent = Union[NormalizedEvent, DeviceLifecycleEvent]


def transform(item: dict) -> Optional[BridgeEvent]:
    """Convert one platform event item.

    Parameters
    ----------
    item:
        A single entry of ``eventData.events``.

    Returns
    -------
    NormalizedEvent or DeviceLifecycleEvent
        When the item is a device-state or device-lifecycle event carrying a
        device id.
    None
        For every other event type, or when the nested payload is missing.
    """
    if not isinstance(item, dict):
        return None
    event_type = item.get("eventType")

    if event_type == EventType.DEVICE_EVENT.value:
        device_event = item.get("deviceEvent")
        device_id = _safe_get(device_event, "deviceId")
        if not device_id:
            return None
        return NormalizedEvent(
            device_id=device_id,
            component_id=device_event.get("componentId") or "main",
            capability=device_event.get("capability") or "",
            attribute=device_event.get("attribute") or "",
            value=device_event.get("value"),
        )

    if event_type == EventType.DEVICE_LIFECYCLE_EVENT.value:
        lifecycle_event = item.get("deviceLifecycleEvent")
        device_id = _safe_get(lifecycle_event, "deviceId")
        lifecycle = _safe_get(lifecycle_event, "lifecycle")
        if not device_id or not lifecycle:
            return None
        return DeviceLifecycleEvent(
            lifecycle=lifecycle,
            device_id=device_id,
            device_name=lifecycle_event.get("deviceName"),
            location_id=lifecycle_event.get("locationId"),
        )

    return None


def to_ndjson(event: BridgeEvent) -> bytes:
    """Serialize *event* as a newline-terminated NDJSON line."""
    return orjson.dumps(asdict(event), option=orjson.OPT_APPEND_NEWLINE)


def _safe_get(obj: Optional[dict], *keys: str):
    """Walk nested dicts, returning ``None`` on any missing key."""
    current = obj
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current
