"""Dataclass models for SmartApp Bridge.

Outbound records are designed to be serializable via ``dataclasses.asdict()``
followed by ``orjson.dumps()``.  Inbound lifecycle messages are a closed set:
one :class:`Lifecycle` discriminant and one payload dataclass per kind.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union


class Lifecycle(str, enum.Enum):
    """SmartApp lifecycle message kinds."""

    PING = "PING"
    CONFIRMATION = "CONFIRMATION"
    CONFIGURATION = "CONFIGURATION"
    INSTALL = "INSTALL"
    UPDATE = "UPDATE"
    EVENT = "EVENT"
    UNINSTALL = "UNINSTALL"


class EventType(str, enum.Enum):
    """Platform event types that may appear inside an EVENT message."""

    DEVICE_EVENT = "DEVICE_EVENT"
    DEVICE_COMMANDS_EVENT = "DEVICE_COMMANDS_EVENT"
    DEVICE_LIFECYCLE_EVENT = "DEVICE_LIFECYCLE_EVENT"
    DEVICE_HEALTH_EVENT = "DEVICE_HEALTH_EVENT"
    HUB_HEALTH_EVENT = "HUB_HEALTH_EVENT"
    MODE_EVENT = "MODE_EVENT"
    TIMER_EVENT = "TIMER_EVENT"
    SCENE_LIFECYCLE_EVENT = "SCENE_LIFECYCLE_EVENT"


class SourceType(str, enum.Enum):
    """Remote subscription source types."""

    DEVICE = "DEVICE"
    DEVICE_LIFECYCLE = "DEVICE_LIFECYCLE"
    CAPABILITY = "CAPABILITY"


class InstallationState(enum.Enum):
    """Where the installation stands, recomputed after every transition."""

    UNINSTALLED = "UNINSTALLED"
    INSTALLED_NO_DEVICES = "INSTALLED_NO_DEVICES"
    PENDING_SYNC = "PENDING_SYNC"
    SYNCED = "SYNCED"


# ── durable state ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Credentials:
    """Installed-app credentials handed out by the platform.

    ``installed_app_id`` and ``auth_token`` always travel together; a record
    lacking either one means the app is not installed.
    """

    installed_app_id: str
    auth_token: str
    refresh_token: Optional[str] = None
    location_id: Optional[str] = None

    @property
    def is_installed(self) -> bool:
        return bool(self.installed_app_id and self.auth_token)


@dataclass(frozen=True)
class CrashEvent:
    """One entry in the crash log. ``timestamp`` is epoch milliseconds."""

    timestamp: int
    error_kind: str


@dataclass
class CrashLoopConfig:
    """Thresholds for crash-loop detection."""

    max_crashes: int = 5
    time_window_minutes: float = 15
    relevant_error_kinds: list[str] = field(
        default_factory=lambda: [
            "API_INIT_FAILURE",
            "DEVICE_HEALTH_FAILURE",
            "TOKEN_REFRESH_FAILURE",
        ]
    )


# ── events ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NormalizedEvent:
    """A device attribute change, identical for push and relay transports."""

    device_id: str
    component_id: str
    capability: str
    attribute: str
    value: Any = None
    event_type: str = "device_event"


@dataclass(frozen=True)
class DeviceLifecycleEvent:
    """A device was created, deleted, updated or moved between locations."""

    lifecycle: str
    device_id: str
    device_name: Optional[str] = None
    location_id: Optional[str] = None
    event_type: str = "device_lifecycle"


@dataclass(frozen=True)
class RemoteSubscription:
    """A subscription as reported by the platform's subscription API."""

    source_type: str
    subscription_name: Optional[str] = None
    device_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass
class SyncResult:
    """Aggregate outcome of a batch of subscription create calls."""

    attempted: int = 0
    created: int = 0
    already_present: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


# ── lifecycle payloads ──────────────────────────────────────────────


@dataclass
class InstalledApp:
    installed_app_id: Optional[str] = None
    location_id: Optional[str] = None


@dataclass
class PingData:
    challenge: Optional[str] = None


@dataclass
class ConfirmationData:
    confirmation_url: Optional[str] = None
    app_id: Optional[str] = None


@dataclass
class ConfigurationData:
    phase: Optional[str] = None
    page_id: Optional[str] = None
    installed_app_id: Optional[str] = None


@dataclass
class InstallData:
    """Payload of INSTALL and UPDATE messages."""

    auth_token: Optional[str] = None
    refresh_token: Optional[str] = None
    installed_app: InstalledApp = field(default_factory=InstalledApp)


@dataclass
class EventData:
    auth_token: Optional[str] = None
    installed_app: Optional[InstalledApp] = None
    events: list = field(default_factory=list)


@dataclass
class UninstallData:
    installed_app: Optional[InstalledApp] = None


LifecyclePayload = Union[
    PingData,
    ConfirmationData,
    ConfigurationData,
    InstallData,
    EventData,
    UninstallData,
]


@dataclass
class LifecycleMessage:
    """A parsed lifecycle request.

    ``data`` is ``None`` when the message lacked its ``<lifecycle>Data``
    object; the handler answers such messages with 400.
    """

    lifecycle: Lifecycle
    data: Optional[LifecyclePayload] = None
    app_id: Optional[str] = None
    execution_id: Optional[str] = None


@dataclass
class LifecycleResponse:
    """Handler result: HTTP status plus the ``<lifecycle>Data`` body."""

    status_code: int = 200
    body: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict = {"statusCode": self.status_code}
        out.update(self.body)
        if self.error:
            out["error"] = self.error
        return out
