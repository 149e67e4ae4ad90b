"""Shared fakes for the bridge tests."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Iterable, Optional, TypeVar

import orjson
import pytest

from smartapp_bridge.credentials import CredentialStore
from smartapp_bridge.errors import RemoteConflict, RemoteFailure
from smartapp_bridge.lifecycle import LifecycleHandler
from smartapp_bridge.models import Credentials, RemoteSubscription
from smartapp_bridge.subscriptions import SubscriptionReconciler

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeSubscriptionApi:
    """In-memory stand-in for the platform subscription API.

    Creating a subscription that already exists raises :class:`RemoteConflict`
    like the real API's 409.
    """

    def __init__(
        self,
        existing_device_ids: Iterable[str] = (),
        fail_device_ids: Iterable[str] = (),
        fail_list: bool = False,
    ) -> None:
        self.subscriptions: list[dict] = [
            {"sourceType": "DEVICE", "device": {"deviceId": d}} for d in existing_device_ids
        ]
        self.fail_device_ids = set(fail_device_ids)
        self.fail_list = fail_list
        self.create_calls: list[dict] = []
        self.list_calls = 0
        self.delete_calls = 0
        self.tokens_seen: list[str] = []

    async def list_subscriptions(self, creds: Credentials) -> list[RemoteSubscription]:
        self.list_calls += 1
        self.tokens_seen.append(creds.auth_token)
        if self.fail_list:
            raise RemoteFailure("list failed", status=500, retryable=True)
        return [
            RemoteSubscription(
                source_type=s["sourceType"],
                device_id=(s.get("device") or {}).get("deviceId"),
            )
            for s in self.subscriptions
        ]

    async def create_subscription(self, creds: Credentials, body: dict) -> dict:
        self.create_calls.append(body)
        self.tokens_seen.append(creds.auth_token)
        device_id = (body.get("device") or {}).get("deviceId")
        if device_id in self.fail_device_ids:
            raise RemoteFailure(f"create failed for {device_id}", status=500)
        if _key(body) in {_key(s) for s in self.subscriptions}:
            raise RemoteConflict("already exists")
        self.subscriptions.append(body)
        return {"id": f"sub-{len(self.subscriptions)}"}

    async def delete_all_subscriptions(self, creds: Credentials) -> None:
        self.delete_calls += 1
        self.subscriptions.clear()

    # ── assertions helpers ──

    def device_subscription_ids(self) -> list[str]:
        return [
            s["device"]["deviceId"] for s in self.subscriptions if s["sourceType"] == "DEVICE"
        ]

    def lifecycle_subscription_count(self) -> int:
        return sum(1 for s in self.subscriptions if s["sourceType"] == "DEVICE_LIFECYCLE")

    def device_create_calls(self) -> list[str]:
        return [b["device"]["deviceId"] for b in self.create_calls if b["sourceType"] == "DEVICE"]


def _key(body: dict) -> tuple:
    source = body.get("sourceType")
    if source == "DEVICE":
        return (source, body["device"]["deviceId"])
    if source == "DEVICE_LIFECYCLE":
        return (source, body["deviceLifecycle"]["locationId"])
    return (source, body.get("capability", {}).get("capability"))


class FakeFetcher:
    """Records CONFIRMATION fetches; raises when ``error`` is set."""

    def __init__(self, status: int = 200, error: Optional[Exception] = None) -> None:
        self.status = status
        self.error = error
        self.urls: list[str] = []

    async def fetch(self, url: str) -> int:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.status


CREDS = Credentials(
    installed_app_id="app-123",
    auth_token="token-abc",
    refresh_token="refresh-xyz",
    location_id="loc-1",
)


def build_handler(
    storage_path,
    api: Optional[FakeSubscriptionApi] = None,
    fetcher: Optional[FakeFetcher] = None,
    credentials: Optional[Credentials] = None,
) -> tuple[LifecycleHandler, CredentialStore, FakeSubscriptionApi]:
    """Wire a handler over fakes, optionally pre-installed with *credentials*."""
    api = api or FakeSubscriptionApi()
    store = CredentialStore(storage_path)
    if credentials is not None:
        store.save(credentials)
    reconciler = SubscriptionReconciler(api, store, name_prefix="test")
    handler = LifecycleHandler(store, reconciler, fetcher or FakeFetcher())
    return handler, store, api


def lifecycle_body(lifecycle: str, data: Optional[dict] = None, **extra) -> bytes:
    """Build a raw lifecycle request body."""
    key = {
        "PING": "pingData",
        "CONFIRMATION": "confirmationData",
        "CONFIGURATION": "configurationData",
        "INSTALL": "installData",
        "UPDATE": "updateData",
        "EVENT": "eventData",
        "UNINSTALL": "uninstallData",
    }[lifecycle]
    msg = {"lifecycle": lifecycle, **extra}
    if data is not None:
        msg[key] = data
    return orjson.dumps(msg)


def install_data(
    installed_app_id: str = "app-123",
    auth_token: str = "token-abc",
    refresh_token: str = "refresh-xyz",
    location_id: str = "loc-1",
) -> dict:
    return {
        "authToken": auth_token,
        "refreshToken": refresh_token,
        "installedApp": {"installedAppId": installed_app_id, "locationId": location_id},
    }


def device_event(device_id: str, attribute: str = "switch", value="on") -> dict:
    return {
        "eventType": "DEVICE_EVENT",
        "deviceEvent": {
            "subscriptionName": "test_sub",
            "deviceId": device_id,
            "componentId": "main",
            "capability": "switch",
            "attribute": attribute,
            "value": value,
            "stateChange": True,
        },
    }


def lifecycle_event(device_id: str, lifecycle: str = "CREATE", name: str = "New Device") -> dict:
    return {
        "eventType": "DEVICE_LIFECYCLE_EVENT",
        "deviceLifecycleEvent": {
            "lifecycle": lifecycle,
            "deviceId": device_id,
            "deviceName": name,
            "locationId": "loc-1",
        },
    }


@pytest.fixture
def fake_api() -> FakeSubscriptionApi:
    return FakeSubscriptionApi()
