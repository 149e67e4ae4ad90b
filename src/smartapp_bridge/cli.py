"""Click CLI for SmartApp Bridge.

Entry point registered in ``pyproject.toml`` as ``smartapp-bridge``.

Subcommands::

    smartapp-bridge                         # run the bridge
    smartapp-bridge crashloop status        # exit 1 when a crash loop is detected
    smartapp-bridge crashloop record KIND   # append a failure to the crash log
    smartapp-bridge crashloop reset         # clear the crash log
    smartapp-bridge credentials show        # show the stored installation (no tokens)
    smartapp-bridge credentials clear       # forget the stored installation
    smartapp-bridge keygen --key-file PATH  # create a credential sealing key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from smartapp_bridge import __version__, vault
from smartapp_bridge.config import AppConfig, LogFileConfig, load_config
from smartapp_bridge.crashloop import CrashErrorKind, CrashLoopManager
from smartapp_bridge.credentials import CredentialStore
from smartapp_bridge.dispatcher import EventDispatcher
from smartapp_bridge.lifecycle import LifecycleHandler
from smartapp_bridge.output import StdoutSink
from smartapp_bridge.redactor import SecretRedactingFilter, collect_secret_values
from smartapp_bridge.relay import RelayClient
from smartapp_bridge.scheduler import TaskScheduler
from smartapp_bridge.server import WebhookServer
from smartapp_bridge.subscriptions import SmartThingsClient, SubscriptionReconciler

logger = logging.getLogger("smartapp_bridge")

DEFAULT_CONFIG = "/etc/smartapp-bridge/config.json"
EXIT_CRASH_LOOP = 3


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    redactor: SecretRedactingFilter,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with JSON on stderr, optional file, and redaction."""
    root = logging.getLogger()
    name = "WARNING" if level.lower() == "warn" else level.upper()
    root.setLevel(getattr(logging, name, logging.INFO))

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    # Handler-level filters also see records propagated from child loggers.
    for handler in handlers:
        handler.setFormatter(_JsonFormatter())
        handler.addFilter(redactor)
        root.addHandler(handler)


def _resolve_config(config_path: Optional[str], strict: bool) -> AppConfig:
    """Load the config file, or fall back to defaults when allowed."""
    path = config_path or os.environ.get("SMARTAPP_BRIDGE_CONFIG", DEFAULT_CONFIG)
    if not strict and not config_path and not Path(path).exists():
        return AppConfig()
    try:
        return load_config(path)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--port", type=int, default=None, help="Override the webhook port.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--exit-on-crash-loop", is_flag=True,
              help="Exit with status 3 instead of starting when a crash loop is detected.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    port: Optional[int],
    validate_only: bool,
    exit_on_crash_loop: bool,
) -> None:
    """SmartApp Bridge: SmartThings webhooks to an NDJSON device event stream."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    cfg = _resolve_config(config_path, strict=True)
    if port is not None:
        cfg.webhook.port = port

    effective_level = (
        log_level
        or os.environ.get("SMARTAPP_BRIDGE_LOG_LEVEL")
        or cfg.logging.level
    )
    redactor = SecretRedactingFilter(
        collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    )
    _setup_logging(effective_level, redactor, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting smartapp-bridge %s (mode=%s, devices=%d)",
        __version__,
        "direct" if cfg.webhook.use_direct_webhook else "relay",
        len(cfg.devices),
    )

    crash_manager = CrashLoopManager(cfg.storage_path)
    if crash_manager.is_loop_detected(cfg.crash_loop):
        logger.error(
            "Crash loop detected: %d failures within %s minutes; "
            "run 'smartapp-bridge crashloop reset' after fixing the cause",
            crash_manager.recent_count(cfg.crash_loop),
            cfg.crash_loop.time_window_minutes,
        )
        if exit_on_crash_loop:
            raise SystemExit(EXIT_CRASH_LOOP)

    asyncio.run(_run_bridge(cfg, redactor, crash_manager))


# ── async runtime ───────────────────────────────────────────────────


async def _run_bridge(
    cfg: AppConfig,
    redactor: SecretRedactingFilter,
    crash_manager: CrashLoopManager,
) -> None:
    """Wire the components, serve until a shutdown signal, then tear down."""
    loop = asyncio.get_running_loop()
    direct = cfg.webhook.use_direct_webhook

    key = vault.load_key(cfg.credentials.key_file) if cfg.credentials.key_file else None
    store = CredentialStore(cfg.storage_path, key=key, on_secret=redactor.add_secret)
    store.load()

    client = SmartThingsClient(cfg.smartthings.api_url, cfg.smartthings.timeout_seconds)
    reconciler = SubscriptionReconciler(client, store, cfg.smartthings.subscription_prefix)
    lifecycle = LifecycleHandler(store, reconciler, client) if direct else None
    server = WebhookServer(cfg.webhook, lifecycle)
    scheduler = TaskScheduler()
    relay = None if direct else RelayClient(cfg.relay)
    if relay is not None:
        redactor.add_secret(cfg.relay.token)
    dispatcher = EventDispatcher(
        server,
        scheduler,
        relay=relay,
        crash_manager=crash_manager,
        retry_minutes=cfg.relay.retry_minutes,
    )

    sink = StdoutSink()
    for device_id in cfg.devices:
        dispatcher.register(device_id, sink)
    dispatcher.add_lifecycle_consumer(sink)

    stopped = asyncio.Event()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        dispatcher.stop()
        stopped.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    try:
        await server.start()
    except OSError:
        crash_manager.record(CrashErrorKind.API_INIT_FAILURE)
        await client.close()
        raise

    try:
        await dispatcher.start()  # relay mode returns only after stop()
        if direct:
            await stopped.wait()
    finally:
        dispatcher.stop()
        await scheduler.aclose()
        await server.stop()
        await client.close()
        if relay is not None:
            await relay.close()
        logger.info("Bridge shut down")


# ── crashloop subcommand group ──────────────────────────────────────


@main.group()
def crashloop() -> None:
    """Inspect or reset the crash-loop log."""


@crashloop.command("status")
@click.pass_context
def crashloop_status(ctx: click.Context) -> None:
    """Print the crash-loop status; exit 1 when a loop is detected."""
    cfg = _resolve_config(ctx.obj.get("config_path"), strict=False)
    manager = CrashLoopManager(cfg.storage_path)
    detected = manager.is_loop_detected(cfg.crash_loop)
    click.echo(orjson.dumps({
        "detected": detected,
        "recent": manager.recent_count(cfg.crash_loop),
        "max_crashes": cfg.crash_loop.max_crashes,
        "time_window_minutes": cfg.crash_loop.time_window_minutes,
        "entries": len(manager.entries()),
    }).decode())
    if detected:
        raise SystemExit(1)


@crashloop.command("record")
@click.argument("kind", default=CrashErrorKind.UNKNOWN_API_FAILURE.value)
@click.pass_context
def crashloop_record(ctx: click.Context, kind: str) -> None:
    """Append a failure of KIND to the crash log."""
    cfg = _resolve_config(ctx.obj.get("config_path"), strict=False)
    CrashLoopManager(cfg.storage_path).record(kind)
    click.echo(f"Recorded: {kind}")


@crashloop.command("reset")
@click.pass_context
def crashloop_reset(ctx: click.Context) -> None:
    """Clear the crash log."""
    cfg = _resolve_config(ctx.obj.get("config_path"), strict=False)
    CrashLoopManager(cfg.storage_path).reset()
    click.echo("Crash log cleared.")


# ── credentials subcommand group ────────────────────────────────────


def _credential_store(cfg: AppConfig) -> CredentialStore:
    key = vault.load_key(cfg.credentials.key_file) if cfg.credentials.key_file else None
    return CredentialStore(cfg.storage_path, key=key)


@main.group()
def credentials() -> None:
    """Inspect or clear the stored installation credentials."""


@credentials.command("show")
@click.pass_context
def credentials_show(ctx: click.Context) -> None:
    """Show the stored installation. Token values are never printed."""
    cfg = _resolve_config(ctx.obj.get("config_path"), strict=False)
    creds = _credential_store(cfg).load()
    if creds is None:
        click.echo("Not installed.")
        return
    click.echo(orjson.dumps({
        "installed_app_id": creds.installed_app_id,
        "location_id": creds.location_id,
        "has_auth_token": bool(creds.auth_token),
        "has_refresh_token": bool(creds.refresh_token),
    }).decode())


@credentials.command("clear")
@click.pass_context
def credentials_clear(ctx: click.Context) -> None:
    """Forget the stored installation credentials."""
    cfg = _resolve_config(ctx.obj.get("config_path"), strict=False)
    _credential_store(cfg).clear()
    click.echo("Credentials cleared.")


@main.command("keygen")
@click.option("--key-file", required=True, help="Path for the 32-byte sealing key.")
@click.option("--force", is_flag=True, help="Overwrite an existing key file.")
def keygen(key_file: str, force: bool) -> None:
    """Create a key for sealing the stored credentials."""
    try:
        path = vault.generate_key(key_file, overwrite=force)
    except FileExistsError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    click.echo(f"Created: {path}")
