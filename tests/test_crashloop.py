"""Tests for the crashloop module."""

from pathlib import Path

import orjson

from smartapp_bridge.crashloop import (
    CRASH_LOG_FILE,
    MAX_LOG_ENTRIES,
    CrashErrorKind,
    CrashLoopManager,
)
from smartapp_bridge.models import CrashLoopConfig

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _record_at_ages(manager: CrashLoopManager, clock: FakeClock, ages_min, kind="API_INIT_FAILURE"):
    """Record one crash per age (minutes before NOW), oldest first."""
    for age in sorted(ages_min, reverse=True):
        clock.now = NOW - age * 60
        manager.record(kind)
    clock.now = NOW


CONFIG = CrashLoopConfig(
    max_crashes=5,
    time_window_minutes=15,
    relevant_error_kinds=["API_INIT_FAILURE"],
)


def test_loop_detected_within_window(tmp_path: Path) -> None:
    """Five relevant crashes at minutes 0..14 trip the detector."""
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    _record_at_ages(manager, clock, [0, 1, 2, 3, 14])
    assert manager.is_loop_detected(CONFIG) is True


def test_entry_outside_window_is_ignored(tmp_path: Path) -> None:
    """With one crash 16 minutes ago only four remain in the window."""
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    _record_at_ages(manager, clock, [0, 1, 2, 3, 16])
    assert manager.recent_count(CONFIG) == 4
    assert manager.is_loop_detected(CONFIG) is False


def test_irrelevant_kinds_do_not_count(tmp_path: Path) -> None:
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    _record_at_ages(manager, clock, [0, 1, 2, 3, 4], kind="UNKNOWN_API_FAILURE")
    assert manager.is_loop_detected(CONFIG) is False


def test_empty_kind_list_counts_everything(tmp_path: Path) -> None:
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    _record_at_ages(manager, clock, [0, 1, 2], kind="WHATEVER")
    config = CrashLoopConfig(max_crashes=3, time_window_minutes=5, relevant_error_kinds=[])
    assert manager.is_loop_detected(config) is True


def test_enum_kinds_are_stored_as_strings(tmp_path: Path) -> None:
    manager = CrashLoopManager(tmp_path, clock=FakeClock())
    manager.record(CrashErrorKind.TOKEN_REFRESH_FAILURE)
    assert manager.entries()[0].error_kind == "TOKEN_REFRESH_FAILURE"


def test_log_is_capped(tmp_path: Path) -> None:
    """The log never exceeds 20 entries and drops the oldest first."""
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    for i in range(MAX_LOG_ENTRIES + 7):
        clock.now = NOW + i
        manager.record(f"KIND_{i}")

    entries = manager.entries()
    assert len(entries) == MAX_LOG_ENTRIES
    assert entries[0].error_kind == "KIND_7"
    assert entries[-1].error_kind == f"KIND_{MAX_LOG_ENTRIES + 6}"


def test_state_survives_new_instance(tmp_path: Path) -> None:
    """A fresh manager sees crashes recorded by a previous one."""
    clock = FakeClock()
    _record_at_ages(CrashLoopManager(tmp_path, clock=clock), clock, [0, 1, 2, 3, 4])
    assert CrashLoopManager(tmp_path, clock=clock).is_loop_detected(CONFIG) is True


def test_reset_clears_log(tmp_path: Path) -> None:
    clock = FakeClock()
    manager = CrashLoopManager(tmp_path, clock=clock)
    _record_at_ages(manager, clock, [0, 1, 2, 3, 4])
    manager.reset()
    assert manager.entries() == []
    assert manager.is_loop_detected(CONFIG) is False


def test_corrupt_log_reads_as_empty(tmp_path: Path) -> None:
    (tmp_path / CRASH_LOG_FILE).write_text("{not json")
    manager = CrashLoopManager(tmp_path, clock=FakeClock())
    assert manager.entries() == []
    manager.record("API_INIT_FAILURE")
    assert len(manager.entries()) == 1


def test_non_list_log_reads_as_empty(tmp_path: Path) -> None:
    (tmp_path / CRASH_LOG_FILE).write_bytes(orjson.dumps({"timestamp": 1}))
    assert CrashLoopManager(tmp_path).entries() == []


def test_creates_storage_directory(tmp_path: Path) -> None:
    root = tmp_path / "nested" / "storage"
    manager = CrashLoopManager(root, clock=FakeClock())
    manager.record("API_INIT_FAILURE")
    assert manager.path.exists()
