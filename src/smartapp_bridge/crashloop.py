"""Crash-loop detection backed by a small JSON log under the storage root.

The log is read from disk on every call, never cached, so a freshly started
process sees the failures recorded by the instances that came before it.
"""

from __future__ import annotations

import enum
import logging
import time
from pathlib import Path
from typing import Callable

import orjson

from smartapp_bridge.models import CrashEvent, CrashLoopConfig

logger = logging.getLogger(__name__)

CRASH_LOG_FILE = "crash_loop_log.json"
MAX_LOG_ENTRIES = 20


class CrashErrorKind(str, enum.Enum):
    """Failure kinds known to the bridge. Other strings are accepted too."""

    API_INIT_FAILURE = "API_INIT_FAILURE"
    DEVICE_HEALTH_FAILURE = "DEVICE_HEALTH_FAILURE"
    TOKEN_REFRESH_FAILURE = "TOKEN_REFRESH_FAILURE"
    UNKNOWN_API_FAILURE = "UNKNOWN_API_FAILURE"


DEFAULT_CRASH_LOOP_CONFIG = CrashLoopConfig()


class CrashLoopManager:
    """Append-only, size-bounded log of failure timestamps.

    Parameters
    ----------
    storage_path:
        Directory holding ``crash_loop_log.json``.
    clock:
        Returns the current time in seconds since the epoch.
    """

    def __init__(
        self,
        storage_path: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage_path = Path(storage_path)
        self._path = self._storage_path / CRASH_LOG_FILE
        self._clock = clock
        logger.debug("Crash log file: %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    def record(self, error_kind: str) -> None:
        """Append a failure of *error_kind* stamped with the current time."""
        kind = _kind_value(error_kind)
        logger.info("Recording potential crash event of type %s", kind)
        entries = self.entries()
        entries.append(CrashEvent(timestamp=self._now_ms(), error_kind=kind))
        self._write(entries)

    def is_loop_detected(self, config: CrashLoopConfig = DEFAULT_CRASH_LOOP_CONFIG) -> bool:
        """Return True iff enough relevant failures fall inside the window."""
        entries = self.entries()
        if not entries:
            logger.debug("No crash events recorded yet")
            return False

        count = self.recent_count(config, entries)
        logger.debug(
            "Found %d relevant crash(es) in the last %s minutes, need %d",
            count,
            config.time_window_minutes,
            config.max_crashes,
        )
        if count >= config.max_crashes:
            logger.warning(
                "Crash loop detected: %d relevant crashes in the last %s minutes",
                count,
                config.time_window_minutes,
            )
            return True
        return False

    def recent_count(
        self,
        config: CrashLoopConfig = DEFAULT_CRASH_LOOP_CONFIG,
        entries: list[CrashEvent] | None = None,
    ) -> int:
        """Count entries of a relevant kind within the trailing window."""
        if entries is None:
            entries = self.entries()
        window_ms = config.time_window_minutes * 60 * 1000
        relevant = {_kind_value(k) for k in config.relevant_error_kinds}
        now = self._now_ms()
        return sum(
            1
            for entry in entries
            if now - entry.timestamp <= window_ms
            and (not relevant or entry.error_kind in relevant)
        )

    def reset(self) -> None:
        """Clear the crash log."""
        logger.info("Resetting crash loop detection state")
        self._write([])

    def entries(self) -> list[CrashEvent]:
        """Read the log from disk. Unreadable or invalid logs read as empty."""
        try:
            if not self._path.exists():
                return []
            data = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            logger.error("Error reading crash log %s: %s", self._path, exc)
            return []

        if not isinstance(data, list):
            return []
        entries: list[CrashEvent] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            ts = item.get("timestamp")
            kind = item.get("error_kind")
            if isinstance(ts, (int, float)) and isinstance(kind, str):
                entries.append(CrashEvent(timestamp=int(ts), error_kind=kind))
        return entries

    # ── internal ────────────────────────────────────────────────────

    def _write(self, entries: list[CrashEvent]) -> None:
        if len(entries) > MAX_LOG_ENTRIES:
            entries = entries[-MAX_LOG_ENTRIES:]
        doc = [{"timestamp": e.timestamp, "error_kind": e.error_kind} for e in entries]
        try:
            self._storage_path.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(orjson.dumps(doc, option=orjson.OPT_INDENT_2))
        except OSError as exc:
            logger.error("Error writing crash log %s: %s", self._path, exc)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)


def _kind_value(kind: str) -> str:
    return kind.value if isinstance(kind, enum.Enum) else str(kind)
