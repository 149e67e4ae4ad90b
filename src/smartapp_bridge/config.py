"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import orjson

from smartapp_bridge.models import CrashLoopConfig

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

DEFAULT_REDACT_PATTERNS = ("*key*", "*token*", "*secret*", "*password*")


@dataclass
class WebhookConfig:
    """Inbound webhook server settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    server_url: str = ""
    smartapp_id: str = ""
    use_direct_webhook: bool = True


@dataclass
class SmartThingsConfig:
    """Platform REST API settings."""

    api_url: str = "https://api.smartthings.com"
    timeout_seconds: float = 30.0
    subscription_prefix: str = "bridge"


@dataclass
class RelayConfig:
    """Legacy relay long-poll settings (used when direct webhooks are off)."""

    url: str = ""
    token: str = ""
    poll_timeout_ms: int = 85000
    request_timeout_ms: int = 90000
    retry_minutes: float = 1.0


@dataclass
class CredentialsConfig:
    """Credential storage settings.

    When ``key_file`` is set the credentials document is sealed with the
    32-byte key it contains.
    """

    key_file: str = ""


@dataclass
class LogFileConfig:
    """Optional log file output settings."""

    enabled: bool = False
    path: str = "/var/log/smartapp-bridge/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_REDACT_PATTERNS))


@dataclass
class AppConfig:
    """Top-level application configuration."""

    storage_path: str = "/var/lib/smartapp-bridge"
    devices: list[str] = field(default_factory=list)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    smartthings: SmartThingsConfig = field(default_factory=SmartThingsConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    crash_loop: CrashLoopConfig = field(default_factory=CrashLoopConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build dataclass *cls* from the known keys of *raw*."""
    return cls(**{k: raw[k] for k in raw if k in cls.__dataclass_fields__})


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        storage_path=raw.get("storage_path", "/var/lib/smartapp-bridge"),
        devices=list(raw.get("devices", [])),
        webhook=_section(WebhookConfig, raw.get("webhook", {})),
        smartthings=_section(SmartThingsConfig, raw.get("smartthings", {})),
        relay=_section(RelayConfig, raw.get("relay", {})),
        crash_loop=_section(CrashLoopConfig, raw.get("crash_loop", {})),
        credentials=_section(CredentialsConfig, raw.get("credentials", {})),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            file=_section(LogFileConfig, log_file_raw),
            redact_patterns=list(logging_raw.get("redact_patterns", DEFAULT_REDACT_PATTERNS)),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file. Defaults to the schema bundled with
        the package.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())
    return config_from_dict(raw, overrides=overrides, schema_path=schema_path)


def config_from_dict(
    raw: dict[str, Any],
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Interpolate and validate an already-parsed config document."""
    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
