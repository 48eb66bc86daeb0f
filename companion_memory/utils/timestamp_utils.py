"""
Timestamp utilities for consistent time handling across the engine.

All times inside the engine are naive UTC datetimes. Offset-aware input is
converted at the parsing boundary so comparisons never mix the two kinds.
"""

import time
from datetime import datetime, timezone
from typing import Any, Optional

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an offset-aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=None)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    """Return `now` (as naive UTC) if given, otherwise the current UTC time."""
    return to_naive_utc(now) if now is not None else utc_now()


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days elapsed from `earlier` to `later`."""
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def hours_between(earlier: datetime, later: datetime) -> float:
    """Fractional hours elapsed from `earlier` to `later`."""
    return (later - earlier).total_seconds() / SECONDS_PER_HOUR


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for persistence."""
    return value.isoformat() if value is not None else None


def parse_datetime(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a persisted timestamp into naive UTC.

    Accepts datetimes, ISO strings (with or without an offset or a trailing
    `Z`), unix seconds (int/float or numeric strings) and millisecond epochs.
    Anything unparsable yields `default`.
    """
    if value is None or value == '':
        return default
    if isinstance(value, datetime):
        try:
            return to_naive_utc(value)
        except OverflowError:
            return default
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            seconds = float(value)
            # Millisecond epochs are written by browser-side clients
            if seconds > 1e11:
                seconds /= 1000.0
            return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return default
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except OverflowError:
            return default
        except ValueError:
            pass
        try:
            return parse_datetime(float(text), default)
        except ValueError:
            return default
    return default


class Deadline:
    """A point on the monotonic clock shared by the sequential steps of one request."""

    def __init__(self, seconds: float):
        self.expires_at = time.monotonic() + seconds

    def remaining(self, cap: Optional[float] = None) -> float:
        """Seconds left, never negative and at most `cap`."""
        left = max(0.0, self.expires_at - time.monotonic())
        return left if cap is None else min(cap, left)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def step_timeout(default: float, deadline: Optional[Deadline] = None) -> float:
    """Timeout for one call: its own limit, cut to what is left of the deadline."""
    return deadline.remaining(default) if deadline is not None else default
