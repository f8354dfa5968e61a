from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Protocol
import uuid

from croniter import croniter
from croniter.croniter import CroniterBadCronError

from .errors import ValidationError
from .logging import get_logger
from .models import ScheduleEntry, SnapshotConfig, SnapshotTTL, Workload

logger = get_logger(__name__)

DEFAULT_SCHEDULE = "0 0 * * MON"
DEFAULT_TTL_VALUE = "1"
DEFAULT_TTL_UNIT = "month"

# Hours per unit for the units that are persisted in hours.
_HOURS_PER_UNIT = {
    "hour": 1,
    "day": 24,
    "week": 168,
    "month": 720,
    "year": 8766,
}

_SECONDS_PER_UNIT = {
    "second": 1,
    "minute": 60,
    **{unit: hours * 3600 for unit, hours in _HOURS_PER_UNIT.items()},
}

_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


@dataclass(frozen=True)
class ParsedTTL:
    quantity: int
    unit: str


class WorkloadStore(Protocol):
    def get_workload(self, workload_id: str) -> Workload | None:
        ...

    def get_schedule(self, workload_id: str) -> ScheduleEntry | None:
        ...

    def set_snapshot_schedule(self, workload_id: str, cron_expression: str) -> None:
        ...

    def set_snapshot_ttl(self, workload_id: str, ttl: str) -> None:
        ...

    def create_pending_snapshot(self, request_id: str, owner_id: str, scheduled_at: datetime) -> None:
        ...

    def delete_pending_snapshots(self, owner_id: str) -> int:
        ...


def validate_cron(expression: str) -> str:
    """Return the normalized cron expression or raise ``ValidationError``."""
    normalized = " ".join((expression or "").split())
    if not normalized:
        raise ValidationError("cron expression is required")
    if not normalized.startswith("@") and len(normalized.split(" ")) != 5:
        raise ValidationError(f"cron expression '{expression}' must have exactly 5 fields")
    try:
        croniter(normalized, datetime.now(timezone.utc))
    except (CroniterBadCronError, ValueError) as error:
        raise ValidationError(f"invalid cron expression '{expression}': {error}") from error
    return normalized


def next_occurrence(expression: str, now: datetime) -> datetime:
    return croniter(expression, now).get_next(datetime)


def normalize_time_unit(unit: str) -> str:
    normalized = (unit or "").strip().lower()
    if normalized.endswith("s") and normalized[:-1] in _SECONDS_PER_UNIT:
        normalized = normalized[:-1]
    if normalized not in _SECONDS_PER_UNIT:
        raise ValidationError(f"unsupported retention time unit: {unit!r}")
    return normalized


def format_ttl(quantity: str | int, unit: str) -> str:
    """Convert a retention quantity and unit into a duration string such as ``720h``."""
    normalized_unit = normalize_time_unit(unit)
    text = str(quantity).strip()
    if not text.isdigit() or int(text) <= 0:
        raise ValidationError(f"retention quantity must be a positive integer, got {quantity!r}")
    value = int(text)

    if normalized_unit == "second":
        return f"{value}s"
    if normalized_unit == "minute":
        return f"{value}m"
    return f"{value * _HOURS_PER_UNIT[normalized_unit]}h"


def parse_ttl(duration: str) -> ParsedTTL:
    """Parse a stored duration back into the largest unit that divides it evenly."""
    match = _DURATION_PATTERN.match((duration or "").strip())
    if match is None or not any(match.groups()):
        raise ValidationError(f"invalid retention duration: {duration!r}")
    hours, minutes, seconds = (int(group or 0) for group in match.groups())
    total_seconds = hours * 3600 + minutes * 60 + seconds
    if total_seconds <= 0:
        raise ValidationError(f"retention duration must be positive, got {duration!r}")

    for unit, unit_seconds in sorted(_SECONDS_PER_UNIT.items(), key=lambda item: item[1], reverse=True):
        if total_seconds % unit_seconds == 0:
            return ParsedTTL(quantity=total_seconds // unit_seconds, unit=unit)
    raise ValidationError(f"invalid retention duration: {duration!r}")


class ScheduleManager:
    """Keeps each workload's cron schedule, retention and pending snapshot request in step."""

    def __init__(self, store: WorkloadStore) -> None:
        self.store = store

    def get_snapshot_config(self, workload_id: str) -> SnapshotConfig:
        workload = self._require_workload(workload_id)
        ttl = workload.snapshot_ttl or format_ttl(DEFAULT_TTL_VALUE, DEFAULT_TTL_UNIT)
        parsed = parse_ttl(ttl)
        return SnapshotConfig(
            auto_enabled=bool(workload.snapshot_schedule),
            schedule=workload.snapshot_schedule or DEFAULT_SCHEDULE,
            ttl=SnapshotTTL(input_value=str(parsed.quantity), input_time_unit=parsed.unit, converted=ttl),
        )

    def get_schedule(self, workload_id: str) -> ScheduleEntry | None:
        self._require_workload(workload_id)
        return self.store.get_schedule(workload_id)

    def save_snapshot_config(
        self,
        workload_id: str,
        *,
        input_value: str | int,
        input_time_unit: str,
        schedule: str,
        auto_enabled: bool,
        now: datetime | None = None,
    ) -> SnapshotConfig:
        workload = self._require_workload(workload_id)

        retention = format_ttl(input_value, input_time_unit)
        cron_expression = validate_cron(schedule) if auto_enabled else ""

        if retention != workload.snapshot_ttl:
            self.store.set_snapshot_ttl(workload_id, retention)
            logger.info("snapshot_retention_changed", workload_id=workload_id, ttl=retention)

        if not auto_enabled:
            purged = self.store.delete_pending_snapshots(workload_id)
            if workload.snapshot_schedule:
                self.store.set_snapshot_schedule(workload_id, "")
                logger.info("snapshot_schedule_disabled", workload_id=workload_id, purged=purged)
        elif cron_expression != workload.snapshot_schedule:
            self.store.delete_pending_snapshots(workload_id)
            self.store.set_snapshot_schedule(workload_id, cron_expression)
            scheduled_at = next_occurrence(cron_expression, now or datetime.now(timezone.utc))
            self.store.create_pending_snapshot(uuid.uuid4().hex, workload_id, scheduled_at)
            logger.info(
                "snapshot_schedule_changed",
                workload_id=workload_id,
                schedule=cron_expression,
                next_run=scheduled_at.isoformat(),
            )
        else:
            logger.debug("snapshot_schedule_unchanged", workload_id=workload_id)

        return self.get_snapshot_config(workload_id)

    def _require_workload(self, workload_id: str) -> Workload:
        workload = self.store.get_workload(workload_id)
        if workload is None:
            raise ValidationError(f"unknown workload '{workload_id}'")
        return workload
