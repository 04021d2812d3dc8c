"""Datetime helpers: lax input -> strict timezone-aware output."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import pendulum

# Apple's reference date (Core Data / NSDate epoch)
APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=UTC)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 with fixed microsecond precision.

    Fixed precision keeps stored timestamps sortable as plain strings.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by :func:`format_iso`."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_apple_date(value: str | float | int | None) -> datetime | None:
    """Parse a date reported by iCloud shared streams.

    Accepts ISO 8601 strings (``2017-06-18T21:02:44Z``) and Apple-epoch
    seconds, either numeric or as a numeric string. Returns None when the value
    cannot be interpreted.
    """
    if value is None:
        return None

    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            seconds = float(candidate)
        except ValueError:
            try:
                parsed = pendulum.parse(candidate, tz="UTC", strict=False)
            except ValueError:
                return None
            if isinstance(parsed, pendulum.DateTime):
                return parsed
            # Date-only strings parse to a Date; durations and times are rejected.
            if isinstance(parsed, pendulum.Date):
                return pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
            return None
        return _from_apple_seconds(seconds)

    return _from_apple_seconds(float(value))


def _from_apple_seconds(seconds: float) -> datetime | None:
    if not math.isfinite(seconds):
        return None
    try:
        return APPLE_EPOCH + timedelta(seconds=seconds)
    except OverflowError:
        return None
