"""Tests for the subscriptions module."""

from __future__ import annotations

from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from smartapp_bridge.credentials import CredentialStore
from smartapp_bridge.errors import RemoteConflict, RemoteFailure
from smartapp_bridge.subscriptions import SmartThingsClient, SubscriptionReconciler

from conftest import CREDS, FakeSubscriptionApi, run_async


def _reconciler(tmp_path: Path, api: FakeSubscriptionApi, installed: bool = True):
    store = CredentialStore(tmp_path)
    if installed:
        store.save(CREDS)
    return SubscriptionReconciler(api, store, name_prefix="test")


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconcile:
    def test_creates_only_missing(self, tmp_path: Path) -> None:
        """|registration − remote| creates are issued, nothing else."""
        api = FakeSubscriptionApi(existing_device_ids=["dev-1", "dev-2", "other"])
        reconciler = _reconciler(tmp_path, api)

        result = run_async(reconciler.reconcile(["dev-1", "dev-2", "dev-3", "dev-4"]))

        assert api.device_create_calls() == ["dev-3", "dev-4"]
        assert result.created == 2
        assert result.ok
        assert api.delete_calls == 0

    def test_no_calls_when_covered(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi(existing_device_ids=["dev-1", "dev-2"])
        reconciler = _reconciler(tmp_path, api)

        result = run_async(reconciler.reconcile(["dev-1", "dev-2"]))

        assert api.create_calls == []
        assert result.attempted == 0

    def test_failures_do_not_stop_batch(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi(fail_device_ids=["dev-2"])
        reconciler = _reconciler(tmp_path, api)

        result = run_async(reconciler.reconcile(["dev-1", "dev-2", "dev-3"]))

        assert api.device_create_calls() == ["dev-1", "dev-2", "dev-3"]
        assert (result.attempted, result.created, result.failed) == (3, 2, 1)
        assert not result.ok

    def test_list_failure_attempts_everything(self, tmp_path: Path) -> None:
        """Without a remote listing every create is tried and 409s absorbed."""
        api = FakeSubscriptionApi(existing_device_ids=["dev-1"], fail_list=True)
        reconciler = _reconciler(tmp_path, api)

        result = run_async(reconciler.reconcile(["dev-1", "dev-2"]))

        assert api.device_create_calls() == ["dev-1", "dev-2"]
        assert result.already_present == 1
        assert result.created == 1
        assert result.ok

    def test_not_installed(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi()
        reconciler = _reconciler(tmp_path, api, installed=False)

        result = run_async(reconciler.reconcile(["dev-1"]))

        assert result.attempted == 0
        assert api.list_calls == 0
        with pytest.raises(RemoteFailure):
            run_async(reconciler.create_device_subscription("dev-1"))

    def test_duplicate_ids_collapse(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi()
        reconciler = _reconciler(tmp_path, api)
        run_async(reconciler.reconcile(["dev-1", "dev-1"]))
        assert api.device_create_calls() == ["dev-1"]


class TestSubscriptionBodies:
    def test_device_subscription_name(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi()
        reconciler = _reconciler(tmp_path, api)

        assert run_async(reconciler.create_device_subscription("abcdef0123456789")) is True
        body = api.create_calls[0]["device"]
        assert body["subscriptionName"] == "test_abcdef01"
        assert body["capability"] == "*"
        assert body["stateChangeOnly"] is True

    def test_existing_subscription_returns_false(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi(existing_device_ids=["dev-1"])
        reconciler = _reconciler(tmp_path, api)
        assert run_async(reconciler.create_device_subscription("dev-1")) is False

    def test_lifecycle_subscription_once(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi()
        reconciler = _reconciler(tmp_path, api)

        assert run_async(reconciler.ensure_lifecycle_subscription()) is True
        assert run_async(reconciler.ensure_lifecycle_subscription()) is True
        assert api.lifecycle_subscription_count() == 1
        assert api.create_calls[0]["deviceLifecycle"]["locationId"] == "loc-1"

    def test_capability_subscription(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi()
        reconciler = _reconciler(tmp_path, api)
        assert run_async(reconciler.create_capability_subscription("switch")) is True
        assert api.create_calls[0]["capability"]["subscriptionName"] == "test_capability_switch"

    def test_recreate_all(self, tmp_path: Path) -> None:
        api = FakeSubscriptionApi(existing_device_ids=["gone-1"])
        reconciler = _reconciler(tmp_path, api)

        result = run_async(reconciler.recreate_all(["dev-1"]))

        assert api.delete_calls == 1
        assert api.device_subscription_ids() == ["dev-1"]
        assert api.lifecycle_subscription_count() == 1
        assert result.created == 1


# =============================================================================
# HTTP client
# =============================================================================


def _fake_platform() -> tuple[web.Application, dict]:
    seen: dict = {"auth": [], "bodies": [], "deleted": 0}

    async def list_subs(request: web.Request) -> web.Response:
        seen["auth"].append(request.headers.get("Authorization"))
        return web.json_response({"items": [
            {"id": "s1", "sourceType": "DEVICE",
             "device": {"deviceId": "dev-1", "subscriptionName": "x_dev-1"}},
            {"id": "s2", "sourceType": "DEVICE_LIFECYCLE",
             "deviceLifecycle": {"locationId": "loc-1"}},
        ]})

    async def create_sub(request: web.Request) -> web.Response:
        body = await request.json()
        seen["bodies"].append(body)
        device_id = body.get("device", {}).get("deviceId")
        if device_id == "dup":
            return web.json_response({"error": "conflict"}, status=409)
        if device_id == "boom":
            return web.json_response({"error": "internal"}, status=500)
        if device_id == "denied":
            return web.json_response({"error": "forbidden"}, status=403)
        return web.json_response({"id": "new-sub"})

    async def delete_subs(request: web.Request) -> web.Response:
        seen["deleted"] += 1
        return web.json_response({"count": 2})

    async def confirm(request: web.Request) -> web.Response:
        return web.Response(text="confirmed")

    app = web.Application()
    path = "/installedapps/{app_id}/subscriptions"
    app.router.add_get(path, list_subs)
    app.router.add_post(path, create_sub)
    app.router.add_delete(path, delete_subs)
    app.router.add_get("/confirm", confirm)
    return app, seen


class TestSmartThingsClient:
    def test_list_subscriptions(self) -> None:
        async def do_test():
            app, seen = _fake_platform()
            async with TestServer(app) as server:
                client = SmartThingsClient(str(server.make_url("/")))
                try:
                    subs = await client.list_subscriptions(CREDS)
                finally:
                    await client.close()
            assert seen["auth"] == ["Bearer token-abc"]
            assert [s.source_type for s in subs] == ["DEVICE", "DEVICE_LIFECYCLE"]
            assert subs[0].device_id == "dev-1"
            assert subs[0].subscription_id == "s1"

        run_async(do_test())

    def test_create_status_mapping(self) -> None:
        """409 maps to RemoteConflict, other errors to RemoteFailure."""

        async def do_test():
            app, seen = _fake_platform()
            async with TestServer(app) as server:
                client = SmartThingsClient(str(server.make_url("/")))
                try:
                    ok = await client.create_subscription(
                        CREDS, {"sourceType": "DEVICE", "device": {"deviceId": "dev-2"}}
                    )
                    assert ok == {"id": "new-sub"}

                    with pytest.raises(RemoteConflict):
                        await client.create_subscription(
                            CREDS, {"sourceType": "DEVICE", "device": {"deviceId": "dup"}}
                        )
                    with pytest.raises(RemoteFailure) as server_error:
                        await client.create_subscription(
                            CREDS, {"sourceType": "DEVICE", "device": {"deviceId": "boom"}}
                        )
                    with pytest.raises(RemoteFailure) as client_error:
                        await client.create_subscription(
                            CREDS, {"sourceType": "DEVICE", "device": {"deviceId": "denied"}}
                        )
                finally:
                    await client.close()
            assert server_error.value.status == 500
            assert server_error.value.retryable is True
            assert client_error.value.status == 403
            assert client_error.value.retryable is False
            assert len(seen["bodies"]) == 4

        run_async(do_test())

    def test_delete_and_fetch(self) -> None:
        async def do_test():
            app, seen = _fake_platform()
            async with TestServer(app) as server:
                client = SmartThingsClient(str(server.make_url("/")))
                try:
                    await client.delete_all_subscriptions(CREDS)
                    status = await client.fetch(str(server.make_url("/confirm")))
                finally:
                    await client.close()
            assert seen["deleted"] == 1
            assert status == 200

        run_async(do_test())

    def test_unreachable_host_is_retryable(self) -> None:
        async def do_test():
            client = SmartThingsClient("http://127.0.0.1:9", timeout_seconds=2)
            try:
                with pytest.raises(RemoteFailure) as excinfo:
                    await client.list_subscriptions(CREDS)
            finally:
                await client.close()
            assert excinfo.value.retryable is True
            assert excinfo.value.status is None

        run_async(do_test())
