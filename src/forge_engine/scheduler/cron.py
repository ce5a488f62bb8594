"""Minimal five-field cron schedule evaluation.

Each field is either ``*`` or one exact number. Lists, ranges and steps are
rejected. ``next_fire_after`` scans forward minute by minute within a bounded
lookahead and returns ``None`` for schedules that never match inside it
(for example ``0 0 31 2 *``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from forge_engine.errors import ValidationError
from forge_engine.timeutil import to_utc

LOOKAHEAD_MINUTES = 366 * 24 * 60 * 5


@dataclass(frozen=True, slots=True)
class CronField:
    """One cron field; ``value is None`` means any value matches."""

    value: int | None = None

    @property
    def is_any(self) -> bool:
        return self.value is None

    def matches(self, candidate: int) -> bool:
        return self.value is None or self.value == candidate


@dataclass(frozen=True, slots=True)
class CronSchedule:
    """Parsed cron expression evaluated against UTC timestamps."""

    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField

    def matches(self, timestamp: datetime) -> bool:
        return self._matches_utc(to_utc(timestamp))

    def _matches_utc(self, ts: datetime) -> bool:
        return (
            self.minute.matches(ts.minute)
            and self.hour.matches(ts.hour)
            and self.day_of_month.matches(ts.day)
            and self.month.matches(ts.month)
            and self.day_of_week.matches(ts.isoweekday() % 7)
        )

    def next_fire_after(
        self,
        after: datetime,
        *,
        lookahead_minutes: int = LOOKAHEAD_MINUTES,
    ) -> datetime | None:
        """Return the first matching minute strictly after ``after``."""

        candidate = (to_utc(after) + timedelta(minutes=1)).replace(second=0, microsecond=0)
        step = timedelta(minutes=1)
        for _ in range(lookahead_minutes):
            if self._matches_utc(candidate):
                return candidate
            candidate += step
        return None


def parse_cron_schedule(raw: str) -> CronSchedule:
    """Parse ``minute hour day-of-month month day-of-week``."""

    fields = raw.split()
    if len(fields) != 5:  # noqa: PLR2004
        raise ValidationError(
            f"invalid cron {raw!r}: expected 5 fields (minute hour day month weekday)",
        )
    return CronSchedule(
        minute=parse_cron_field(fields[0], 0, 59, "minute"),
        hour=parse_cron_field(fields[1], 0, 23, "hour"),
        day_of_month=parse_cron_field(fields[2], 1, 31, "day-of-month"),
        month=parse_cron_field(fields[3], 1, 12, "month"),
        day_of_week=parse_cron_field(fields[4], 0, 6, "day-of-week"),
    )


def parse_cron_field(raw: str, minimum: int, maximum: int, label: str) -> CronField:
    if raw == "*":
        return CronField()
    if any(token in raw for token in ("/", ",", "-")):
        raise ValidationError(
            f"unsupported {label} field {raw!r}: only '*' or exact numeric values are supported",
        )
    if not raw.isascii() or not raw.isdigit():
        raise ValidationError(f"invalid {label} field {raw!r}")
    value = int(raw)
    if not minimum <= value <= maximum:
        raise ValidationError(f"invalid {label} field {raw!r}: expected {minimum}..={maximum}")
    return CronField(value)
