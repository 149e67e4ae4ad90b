"""Tests for the transform module."""

import orjson

from smartapp_bridge.models import DeviceLifecycleEvent, NormalizedEvent
from smartapp_bridge.transform import to_ndjson, transform

from conftest import device_event, lifecycle_event


def test_device_event() -> None:
    """DEVICE_EVENT items become NormalizedEvents with the value untouched."""
    event = transform(device_event("dev-1", attribute="switch", value="off"))
    assert event == NormalizedEvent(
        device_id="dev-1",
        component_id="main",
        capability="switch",
        attribute="switch",
        value="off",
    )


def test_structured_value_passes_through() -> None:
    """Values are opaque; dicts and lists survive unchanged."""
    value = {"heatingSetpoint": 21.5, "unit": "C"}
    event = transform(device_event("dev-1", attribute="setpoint", value=value))
    assert event.value == value


def test_lifecycle_event() -> None:
    event = transform(lifecycle_event("dev-2", "DELETE", name="Lamp"))
    assert isinstance(event, DeviceLifecycleEvent)
    assert event.lifecycle == "DELETE"
    assert event.device_id == "dev-2"
    assert event.device_name == "Lamp"


def test_unknown_event_type() -> None:
    """Other platform events are not translated."""
    assert transform({"eventType": "MODE_EVENT", "modeEvent": {"modeId": "x"}}) is None
    assert transform({"eventType": "SOMETHING_NEW"}) is None


def test_missing_nested_payload() -> None:
    assert transform({"eventType": "DEVICE_EVENT"}) is None
    assert transform({"eventType": "DEVICE_EVENT", "deviceEvent": {"capability": "x"}}) is None
    assert transform("not-a-dict") is None


def test_ndjson_line() -> None:
    """Serialized events are newline-terminated JSON objects."""
    line = to_ndjson(transform(device_event("dev-1")))
    assert line.endswith(b"\n")
    record = orjson.loads(line)
    assert record["device_id"] == "dev-1"
    assert record["event_type"] == "device_event"
