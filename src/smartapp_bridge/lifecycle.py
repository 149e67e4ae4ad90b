"""SmartApp lifecycle handler.

One message is handled at a time against the current credentials and device
registration; no other state survives between messages. The installation
state is recomputed after every transition::

    UNINSTALLED ──INSTALL/UPDATE/first EVENT──▶ INSTALLED_NO_DEVICES
         ▲                                          │ register_devices()
         │                                          ▼
         └───────────────UNINSTALL──────────── PENDING_SYNC
                                                    │ reconciliation
                                                    ▼
                                                  SYNCED

An EVENT that brings the first credentials while devices are already
registered triggers reconciliation through a one-shot gate, so concurrent
EVENTs cannot both start it.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Protocol

from smartapp_bridge.credentials import CredentialStore
from smartapp_bridge.errors import RemoteFailure
from smartapp_bridge.models import (
    ConfigurationData,
    ConfirmationData,
    Credentials,
    DeviceLifecycleEvent,
    EventData,
    InstallData,
    InstallationState,
    Lifecycle,
    LifecycleMessage,
    LifecycleResponse,
    NormalizedEvent,
    PingData,
    SyncResult,
    UninstallData,
)
from smartapp_bridge.subscriptions import SubscriptionReconciler
from smartapp_bridge.transform import transform

logger = logging.getLogger(__name__)

EventConsumer = Callable[[NormalizedEvent], None]
LifecycleConsumer = Callable[[DeviceLifecycleEvent], None]

APP_NAME = "SmartThings Bridge"
APP_DESCRIPTION = "Real-time device updates for the local bridge"
APP_ID = "smartapp-bridge"
APP_PERMISSIONS = ["r:devices:*", "x:devices:*", "r:locations:*"]


class UrlFetcher(Protocol):
    async def fetch(self, url: str) -> int: ...


class LifecycleHandler:
    """Turns lifecycle messages into credential, subscription and event effects.

    Parameters
    ----------
    store:
        Credential store, already loaded.
    reconciler:
        Remote subscription maintenance.
    fetcher:
        Performs the CONFIRMATION GET.
    """

    def __init__(
        self,
        store: CredentialStore,
        reconciler: SubscriptionReconciler,
        fetcher: UrlFetcher,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._fetcher = fetcher
        self._device_ids: dict[str, None] = {}
        self._synced = False
        self._first_sync_claimed = False
        self._event_consumers: list[EventConsumer] = []
        self._lifecycle_consumers: list[LifecycleConsumer] = []
        self._state = self._compute_state()

    # ── registration ────────────────────────────────────────────────

    @property
    def device_ids(self) -> list[str]:
        return list(self._device_ids)

    @property
    def state(self) -> InstallationState:
        return self._state

    @property
    def is_installed(self) -> bool:
        return self._store.is_installed

    def add_event_consumer(self, consumer: EventConsumer) -> None:
        self._event_consumers.append(consumer)

    def add_lifecycle_consumer(self, consumer: LifecycleConsumer) -> None:
        self._lifecycle_consumers.append(consumer)

    async def register_devices(self, device_ids: Iterable[str]) -> SyncResult:
        """Add *device_ids* to the registration and sync when installed.

        Without credentials the ids are only remembered; the first EVENT or
        INSTALL picks them up.
        """
        added = [d for d in device_ids if d and d not in self._device_ids]
        for device_id in added:
            self._device_ids[device_id] = None
        if added:
            self._synced = False
        self._update_state()
        logger.info(
            "Registered %d new device id(s), %d total", len(added), len(self._device_ids)
        )

        if not self.is_installed:
            logger.info("No credentials yet, subscriptions will be created on the first EVENT")
            return SyncResult()
        if not self._device_ids:
            return SyncResult()
        return await self._sync_missing()

    # ── dispatch ────────────────────────────────────────────────────

    async def handle(self, message: LifecycleMessage) -> LifecycleResponse:
        """Handle one lifecycle message and build the protocol response."""
        logger.debug(
            "Received %s lifecycle message (execution %s)",
            message.lifecycle.value,
            message.execution_id,
        )
        handler = {
            Lifecycle.PING: self._handle_ping,
            Lifecycle.CONFIRMATION: self._handle_confirmation,
            Lifecycle.CONFIGURATION: self._handle_configuration,
            Lifecycle.INSTALL: self._handle_install,
            Lifecycle.UPDATE: self._handle_update,
            Lifecycle.EVENT: self._handle_event,
            Lifecycle.UNINSTALL: self._handle_uninstall,
        }[message.lifecycle]
        return await handler(message)

    async def _handle_ping(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        if not isinstance(data, PingData) or not data.challenge:
            logger.error("PING request missing challenge")
            return _bad_request("PING request missing pingData.challenge")
        logger.info("Answering PING challenge")
        return LifecycleResponse(200, {"pingData": {"challenge": data.challenge}})

    async def _handle_confirmation(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        if not isinstance(data, ConfirmationData) or not data.confirmation_url:
            logger.error("CONFIRMATION request missing confirmationUrl")
            return _bad_request("CONFIRMATION request missing confirmationData.confirmationUrl")

        logger.info("Confirming domain for app %s at %s", data.app_id, data.confirmation_url)
        try:
            status = await self._fetcher.fetch(data.confirmation_url)
        except RemoteFailure as exc:
            logger.error("Domain confirmation failed: %s", exc)
            return LifecycleResponse(500, error="Domain confirmation request failed")
        logger.info("Domain confirmation answered with HTTP %d", status)
        return LifecycleResponse(200, {"targetUrl": data.confirmation_url})

    async def _handle_configuration(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        if not isinstance(data, ConfigurationData):
            logger.error("CONFIGURATION request missing configurationData")
            return _bad_request("CONFIGURATION request missing configurationData")

        logger.info("Configuration phase: %s", data.phase)
        if data.phase == "INITIALIZE":
            return LifecycleResponse(200, {"configurationData": {"initialize": {
                "name": APP_NAME,
                "description": APP_DESCRIPTION,
                "id": APP_ID,
                "permissions": list(APP_PERMISSIONS),
                "firstPageId": "1",
            }}})
        if data.phase == "PAGE":
            return LifecycleResponse(200, {"configurationData": {"page": _about_page()}})
        return LifecycleResponse(200)

    async def _handle_install(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        creds = _credentials_from(data) if isinstance(data, InstallData) else None
        if creds is None:
            logger.error("INSTALL request missing installData credentials")
            return _bad_request("INSTALL request missing installData authToken or installedApp")

        logger.info("App installed: %s (location %s)", creds.installed_app_id, creds.location_id)
        self._store.save(creds)
        self._update_state()

        if self._device_ids:
            result = await self._reconciler.create_all(self._device_ids)
            self._mark_synced(result)
        else:
            logger.warning("No device ids registered yet, subscriptions follow registration")
        await self._reconciler.ensure_lifecycle_subscription()
        return LifecycleResponse(200, {"installData": {}})

    async def _handle_update(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        creds = _credentials_from(data) if isinstance(data, InstallData) else None
        if creds is None:
            logger.error("UPDATE request missing updateData credentials")
            return _bad_request("UPDATE request missing updateData authToken or installedApp")

        logger.info("App updated: %s", creds.installed_app_id)
        self._store.save(creds)
        self._update_state()

        result = await self._reconciler.recreate_all(self._device_ids)
        if self._device_ids:
            self._mark_synced(result)
        return LifecycleResponse(200, {"updateData": {}})

    async def _handle_event(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        if not isinstance(data, EventData):
            logger.error("EVENT request missing eventData")
            return _bad_request("EVENT request missing eventData")

        had_credentials = self.is_installed
        app = data.installed_app
        if data.auth_token and app is not None and app.installed_app_id:
            previous = self._store.credentials
            refresh_token = None
            if previous is not None and previous.installed_app_id == app.installed_app_id:
                refresh_token = previous.refresh_token
            self._store.save(Credentials(
                installed_app_id=app.installed_app_id,
                auth_token=data.auth_token,
                refresh_token=refresh_token,
                location_id=app.location_id,
            ))
            self._update_state()

            if not had_credentials and self._device_ids and self._claim_first_sync():
                logger.info("Credentials received from EVENT, syncing device subscriptions")
                await self._sync_missing()

        logger.info("Received EVENT with %d event(s)", len(data.events))
        for item in data.events:
            event = transform(item)
            if isinstance(event, NormalizedEvent):
                logger.debug(
                    "Device event %s %s.%s = %r",
                    event.device_id, event.capability, event.attribute, event.value,
                )
                self._notify(self._event_consumers, event)
            elif isinstance(event, DeviceLifecycleEvent):
                await self._on_device_lifecycle(event)
            else:
                event_type = item.get("eventType") if isinstance(item, dict) else None
                logger.info("Ignoring event of type %s", event_type)

        return LifecycleResponse(200, {"eventData": {}})

    async def _handle_uninstall(self, message: LifecycleMessage) -> LifecycleResponse:
        data = message.data
        app = data.installed_app if isinstance(data, UninstallData) else None
        logger.info("App uninstalled: %s", app.installed_app_id if app else "<unknown>")
        self._store.clear()
        self._synced = False
        self._first_sync_claimed = False
        self._update_state()
        return LifecycleResponse(200, {"uninstallData": {}})

    # ── helpers ─────────────────────────────────────────────────────

    async def _on_device_lifecycle(self, event: DeviceLifecycleEvent) -> None:
        logger.info(
            "Device lifecycle %s for device %s%s",
            event.lifecycle,
            event.device_id,
            f" ({event.device_name})" if event.device_name else "",
        )
        if event.lifecycle == "CREATE":
            if self.is_installed:
                try:
                    await self._reconciler.create_device_subscription(event.device_id)
                except RemoteFailure as exc:
                    logger.error("Failed to subscribe to new device %s: %s", event.device_id, exc)
            self._device_ids.setdefault(event.device_id, None)
            self._update_state()
        elif event.lifecycle == "DELETE":
            self._device_ids.pop(event.device_id, None)
            self._update_state()
        self._notify(self._lifecycle_consumers, event)

    async def _sync_missing(self) -> SyncResult:
        result = await self._reconciler.reconcile(self._device_ids)
        await self._reconciler.ensure_lifecycle_subscription()
        self._mark_synced(result)
        return result

    def _claim_first_sync(self) -> bool:
        if self._first_sync_claimed:
            return False
        self._first_sync_claimed = True
        return True

    def _mark_synced(self, result: SyncResult) -> None:
        self._synced = result.ok
        self._update_state()

    def _compute_state(self) -> InstallationState:
        if not self.is_installed:
            return InstallationState.UNINSTALLED
        if not self._device_ids:
            return InstallationState.INSTALLED_NO_DEVICES
        if not self._synced:
            return InstallationState.PENDING_SYNC
        return InstallationState.SYNCED

    def _update_state(self) -> None:
        new = self._compute_state()
        if new is not self._state:
            logger.info("Installation state: %s → %s", self._state.value, new.value)
            self._state = new

    def _notify(self, consumers: list, event) -> None:
        for consumer in consumers:
            try:
                consumer(event)
            except Exception:
                logger.exception("Error in %s consumer", event.event_type)


def _credentials_from(data: InstallData) -> Optional[Credentials]:
    app = data.installed_app
    if not data.auth_token or app is None or not app.installed_app_id:
        return None
    return Credentials(
        installed_app_id=app.installed_app_id,
        auth_token=data.auth_token,
        refresh_token=data.refresh_token,
        location_id=app.location_id,
    )


def _bad_request(error: str) -> LifecycleResponse:
    return LifecycleResponse(400, error=error)


def _about_page() -> dict:
    return {
        "pageId": "1",
        "name": f"{APP_NAME} Configuration",
        "nextPageId": None,
        "previousPageId": None,
        "complete": True,
        "sections": [{
            "name": "About",
            "settings": [{
                "id": "info",
                "name": APP_NAME,
                "description": (
                    "This app enables real-time device updates for the local bridge. "
                    "All registered devices are monitored for changes automatically."
                ),
                "type": "PARAGRAPH",
            }],
        }],
    }
