from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from velero_store_manager.errors import ValidationError
from velero_store_manager.metadata import SnapshotScheduleStore
from velero_store_manager.models import WORKLOAD_KIND_CLUSTER
from velero_store_manager.schedule import (
    ParsedTTL,
    ScheduleManager,
    format_ttl,
    next_occurrence,
    parse_ttl,
    validate_cron,
)

_NOW = datetime(2026, 2, 25, 15, 30, tzinfo=timezone.utc)


def _manager(tmp_path: Path, workload_id: str = "app-1") -> tuple[ScheduleManager, SnapshotScheduleStore]:
    store = SnapshotScheduleStore(tmp_path / "snapshots.db")
    store.initialize()
    store.upsert_workload(workload_id)
    return ScheduleManager(store), store


@pytest.mark.parametrize("expression", ["0 0 * * MON", "*/15 * * * *", "@daily", "30 2 1 * *"])
def test_validate_cron_accepts_five_field_and_descriptor_expressions(expression: str) -> None:
    assert validate_cron(expression) == expression


@pytest.mark.parametrize("expression", ["not-a-cron", "", "0 0 * *", "0 0 * * * *", "61 0 * * *"])
def test_validate_cron_rejects_malformed_expressions(expression: str) -> None:
    with pytest.raises(ValidationError):
        validate_cron(expression)


def test_next_occurrence_returns_following_monday_midnight() -> None:
    assert next_occurrence("0 0 * * MON", _NOW) == datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("quantity", "unit", "expected"),
    [
        ("1", "month", "720h"),
        ("2", "weeks", "336h"),
        ("3", "day", "72h"),
        ("1", "year", "8766h"),
        ("12", "hour", "12h"),
        ("30", "minutes", "30m"),
        ("15", "second", "15s"),
    ],
)
def test_format_ttl_converts_units_to_duration(quantity: str, unit: str, expected: str) -> None:
    assert format_ttl(quantity, unit) == expected


@pytest.mark.parametrize(("quantity", "unit"), [("0", "month"), ("-1", "day"), ("1.5", "day"), ("abc", "day"), ("1", "fortnight")])
def test_format_ttl_rejects_invalid_retention(quantity: str, unit: str) -> None:
    with pytest.raises(ValidationError):
        format_ttl(quantity, unit)


@pytest.mark.parametrize(
    ("duration", "expected"),
    [
        ("720h", ParsedTTL(quantity=1, unit="month")),
        ("8766h", ParsedTTL(quantity=1, unit="year")),
        ("336h", ParsedTTL(quantity=2, unit="week")),
        ("48h", ParsedTTL(quantity=2, unit="day")),
        ("30m", ParsedTTL(quantity=30, unit="minute")),
        ("1h30m", ParsedTTL(quantity=90, unit="minute")),
    ],
)
def test_parse_ttl_picks_largest_dividing_unit(duration: str, expected: ParsedTTL) -> None:
    assert parse_ttl(duration) == expected


def test_parse_ttl_rejects_empty_and_zero_durations() -> None:
    for duration in ("", "0h", "soon"):
        with pytest.raises(ValidationError):
            parse_ttl(duration)


def test_get_snapshot_config_without_settings_returns_defaults(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)

    snapshot_config = manager.get_snapshot_config("app-1")

    assert snapshot_config.auto_enabled is False
    assert snapshot_config.schedule == "0 0 * * MON"
    assert snapshot_config.ttl.input_value == "1"
    assert snapshot_config.ttl.input_time_unit == "month"
    assert snapshot_config.ttl.converted == "720h"


def test_save_with_new_schedule_purges_pending_and_creates_exactly_one(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)
    store.create_pending_snapshot("stale-1", "app-1", _NOW)
    store.create_pending_snapshot("stale-2", "app-1", _NOW)

    snapshot_config = manager.save_snapshot_config(
        "app-1",
        input_value="1",
        input_time_unit="month",
        schedule="0 0 * * MON",
        auto_enabled=True,
        now=_NOW,
    )

    pending = store.list_pending_snapshots("app-1")
    assert len(pending) == 1
    assert pending[0].scheduled_at == datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
    assert snapshot_config.auto_enabled is True
    assert store.get_workload("app-1").snapshot_schedule == "0 0 * * MON"
    assert store.get_workload("app-1").snapshot_ttl == "720h"


def test_save_with_unchanged_schedule_creates_no_pending_request(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)
    manager.save_snapshot_config("app-1", input_value="1", input_time_unit="month", schedule="0 0 * * MON", auto_enabled=True, now=_NOW)
    first_pending = store.list_pending_snapshots("app-1")

    manager.save_snapshot_config("app-1", input_value="2", input_time_unit="week", schedule="0 0 * * MON", auto_enabled=True, now=_NOW)

    assert store.list_pending_snapshots("app-1") == first_pending
    assert store.get_workload("app-1").snapshot_ttl == "336h"


def test_save_with_disabled_schedule_purges_pending_and_clears_cron(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)
    manager.save_snapshot_config("app-1", input_value="1", input_time_unit="month", schedule="@daily", auto_enabled=True, now=_NOW)

    snapshot_config = manager.save_snapshot_config(
        "app-1",
        input_value="1",
        input_time_unit="month",
        schedule="@daily",
        auto_enabled=False,
    )

    assert store.list_pending_snapshots("app-1") == []
    assert store.get_workload("app-1").snapshot_schedule == ""
    assert store.get_schedule("app-1") is None
    assert snapshot_config.auto_enabled is False


def test_save_with_invalid_cron_changes_nothing(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)
    manager.save_snapshot_config("app-1", input_value="1", input_time_unit="month", schedule="0 0 * * MON", auto_enabled=True, now=_NOW)
    pending_before = store.list_pending_snapshots("app-1")

    with pytest.raises(ValidationError):
        manager.save_snapshot_config("app-1", input_value="3", input_time_unit="day", schedule="not-a-cron", auto_enabled=True)

    workload = store.get_workload("app-1")
    assert workload.snapshot_schedule == "0 0 * * MON"
    assert workload.snapshot_ttl == "720h"
    assert store.list_pending_snapshots("app-1") == pending_before


def test_save_with_invalid_retention_changes_nothing(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)

    with pytest.raises(ValidationError):
        manager.save_snapshot_config("app-1", input_value="0", input_time_unit="month", schedule="@daily", auto_enabled=True)

    assert store.get_workload("app-1").snapshot_schedule == ""
    assert store.list_pending_snapshots("app-1") == []


def test_cluster_workloads_share_the_schedule_manager(tmp_path: Path) -> None:
    manager, store = _manager(tmp_path)
    store.upsert_workload("instance-1", kind=WORKLOAD_KIND_CLUSTER)

    manager.save_snapshot_config("instance-1", input_value="7", input_time_unit="day", schedule="@weekly", auto_enabled=True, now=_NOW)

    entry = manager.get_schedule("instance-1")
    assert entry is not None
    assert entry.cron_expression == "@weekly"
    assert entry.retention == "168h"
    assert store.list_pending_snapshots("app-1") == []


def test_save_for_unknown_workload_raises_validation_error(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)

    with pytest.raises(ValidationError, match="unknown workload"):
        manager.get_snapshot_config("missing")
