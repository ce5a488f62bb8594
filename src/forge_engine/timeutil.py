"""UTC clock and RFC3339 helpers."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are assumed to be UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_rfc3339(value: datetime) -> str:
    return to_utc(value).isoformat()


def from_rfc3339(value: str) -> datetime:
    """Parse RFC3339/ISO timestamp, accepting a trailing ``Z``."""

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    return to_utc(datetime.fromisoformat(text))


def now_rfc3339() -> str:
    return utc_now().isoformat()
