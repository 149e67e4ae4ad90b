"""Routes normalized events to the consumer registered for each device.

Events arrive from two transports and leave through one contract::

    push:  platform → WebhookServer → LifecycleHandler ─┐
    relay: RelayClient.poll() (long-poll loop) ─────────┼─▶ dispatch(event) → consumer
    legacy POST /  → WebhookServer ─────────────────────┘

Relay loop state machine::

    INIT → POLLING → (error) → WAIT_RETRY → POLLING
    any  → (stop) → STOPPED
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Iterable, Optional, Protocol

from smartapp_bridge.crashloop import CrashErrorKind, CrashLoopManager
from smartapp_bridge.errors import BridgeError, RemoteFailure
from smartapp_bridge.models import DeviceLifecycleEvent, NormalizedEvent, SyncResult
from smartapp_bridge.scheduler import ScheduledTask, TaskScheduler
from smartapp_bridge.server import WebhookServer

logger = logging.getLogger(__name__)

Consumer = Callable[[NormalizedEvent], None]
LifecycleConsumer = Callable[[DeviceLifecycleEvent], None]


class EventSource(Protocol):
    async def poll(self, device_ids: Iterable[str]) -> list[NormalizedEvent]: ...


class RelayState(enum.Enum):
    """States of the relay polling loop."""

    INIT = "INIT"
    POLLING = "POLLING"
    WAIT_RETRY = "WAIT_RETRY"
    STOPPED = "STOPPED"


class EventDispatcher:
    """Device-id → consumer registry plus the relay polling fallback.

    Parameters
    ----------
    server:
        Webhook server; the dispatcher attaches itself to it and, in direct
        mode, to its lifecycle handler.
    scheduler:
        Runs the background subscription syncs.
    relay:
        Event source polled when direct webhooks are disabled.
    crash_manager:
        Receives ``API_INIT_FAILURE`` when the initial sync fails.
    retry_minutes:
        Wait after a failed relay poll.
    sync_debounce_seconds:
        Delay before a sync triggered by a late registration, so a burst of
        registrations costs one sync.
    """

    def __init__(
        self,
        server: WebhookServer,
        scheduler: TaskScheduler,
        relay: Optional[EventSource] = None,
        crash_manager: Optional[CrashLoopManager] = None,
        retry_minutes: float = 1.0,
        sync_debounce_seconds: float = 2.0,
    ) -> None:
        self._server = server
        self._scheduler = scheduler
        self._relay = relay
        self._crash_manager = crash_manager
        self._retry_seconds = retry_minutes * 60
        self._debounce = sync_debounce_seconds

        self._consumers: dict[str, Consumer] = {}
        self._lifecycle_consumers: list[LifecycleConsumer] = []
        self._shutdown = asyncio.Event()
        self._state = RelayState.INIT
        self._started = False
        self._initial_sync_done = False
        self._pending_sync: Optional[ScheduledTask] = None
        self._handed_over: set[str] = set()

        server.add_event_handler(self.dispatch)
        lifecycle = server.lifecycle
        if server.direct_webhook and lifecycle is not None:
            lifecycle.add_event_consumer(self.dispatch)
            lifecycle.add_lifecycle_consumer(self._dispatch_lifecycle)

    @property
    def device_ids(self) -> list[str]:
        return list(self._consumers)

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def pending_sync(self) -> Optional[ScheduledTask]:
        return self._pending_sync

    def register(self, device_id: str, consumer: Consumer) -> None:
        """Route events for *device_id* to *consumer*, replacing any previous one."""
        is_new = device_id not in self._consumers
        self._consumers[device_id] = consumer
        logger.debug("Registered consumer for device %s", device_id)
        if is_new and self._started and self._server.direct_webhook:
            self._schedule_sync(self._debounce)

    def unregister(self, device_id: str) -> None:
        self._consumers.pop(device_id, None)

    def add_lifecycle_consumer(self, consumer: LifecycleConsumer) -> None:
        self._lifecycle_consumers.append(consumer)

    def dispatch(self, event: NormalizedEvent) -> bool:
        """Deliver *event* to its device's consumer.

        Returns False when no consumer is registered (the event is dropped)
        or when the consumer raised.
        """
        consumer = self._consumers.get(event.device_id)
        if consumer is None:
            logger.debug("Dropping event for unregistered device %s", event.device_id)
            return False
        try:
            consumer(event)
        except Exception:
            logger.exception("Consumer for device %s failed", event.device_id)
            return False
        return True

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin delivering events.

        In direct mode this schedules the initial subscription sync and
        returns. In relay mode it runs the polling loop until :meth:`stop`.
        """
        self._started = True
        if self._server.direct_webhook:
            logger.info("Direct webhook mode: the platform pushes events to the webhook server")
            self._schedule_sync(0.0)
            return

        if self._relay is None:
            raise ValueError("relay mode requires an event source")
        logger.info("Relay mode: polling the relay for %d device(s)", len(self._consumers))
        await self._run_relay()

    def stop(self) -> None:
        self._set_state(RelayState.STOPPED)
        self._shutdown.set()
        if self._pending_sync is not None:
            self._pending_sync.cancel()

    # ── subscription sync ───────────────────────────────────────────

    def _schedule_sync(self, delay: float) -> None:
        if self._pending_sync is not None and not self._pending_sync.done():
            self._pending_sync.cancel()
        self._pending_sync = self._scheduler.schedule(
            self._sync_devices, delay=delay, name="subscription-sync"
        )

    async def _sync_devices(self) -> Optional[SyncResult]:
        lifecycle = self._server.lifecycle
        if lifecycle is None:
            logger.error("Direct webhook mode without a lifecycle handler, cannot sync")
            return None

        initial = not self._initial_sync_done
        self._initial_sync_done = True
        # Only ids the lifecycle handler has not seen yet; it owns the
        # registration afterwards, including removals on DELETE.
        new_ids = [d for d in self.device_ids if d not in self._handed_over]
        self._handed_over.update(new_ids)
        try:
            result = await lifecycle.register_devices(new_ids)
        except BridgeError as exc:
            logger.error("Device subscription sync failed: %s", exc)
            if initial:
                self._record_crash()
            return None

        if not result.ok:
            logger.error("Device subscription sync left %d device(s) unsubscribed", result.failed)
            if initial:
                self._record_crash()
        return result

    def _record_crash(self) -> None:
        if self._crash_manager is not None:
            self._crash_manager.record(CrashErrorKind.API_INIT_FAILURE)

    # ── relay loop ──────────────────────────────────────────────────

    async def _run_relay(self) -> None:
        while not self._shutdown.is_set():
            self._set_state(RelayState.POLLING)
            try:
                events = await self._relay.poll(self.device_ids)
            except RemoteFailure as exc:
                if self._shutdown.is_set():
                    break
                logger.error("Could not reach the relay service: %s, will retry", exc)
                await self._wait_retry()
                continue

            logger.debug("Relay delivered %d event(s)", len(events))
            for event in events:
                self.dispatch(event)
        self._set_state(RelayState.STOPPED)

    async def _wait_retry(self) -> None:
        self._set_state(RelayState.WAIT_RETRY)
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self._retry_seconds)
        except asyncio.TimeoutError:
            pass  # retry delay elapsed normally

    def _dispatch_lifecycle(self, event: DeviceLifecycleEvent) -> None:
        for consumer in self._lifecycle_consumers:
            try:
                consumer(event)
            except Exception:
                logger.exception("Lifecycle consumer failed for device %s", event.device_id)

    def _set_state(self, new: RelayState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.debug("Relay state: %s → %s", old.value, new.value)
