"""
pathfinder.engine.timeutils — "Now" and Local Reset Boundaries
================================================================

The only time helpers shared by the event clocks and the session budget.
All instants handled by the engine are timezone-aware; naive datetimes
are rejected early so wall-clock arithmetic never silently mixes zones.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from pathfinder.constants import SESSION_KEY_PREFIX


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_aware(instant: datetime) -> datetime:
    """Return *instant* unchanged, or raise if it carries no tzinfo."""
    if instant.tzinfo is None or instant.tzinfo.utcoffset(instant) is None:
        raise ValueError(f"Expected a timezone-aware datetime, got {instant!r}")
    return instant


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from *start* to *end*, floored (negative if end < start)."""
    return math.floor((end - start).total_seconds())


def session_day(now: datetime, tz: tzinfo, reset_hour: int, reset_minute: int) -> date:
    """Logical calendar day for budget accounting.

    Before today's reset time-of-day (in *tz*) the session still belongs to
    the previous calendar day.
    """
    local = ensure_aware(now).astimezone(tz)
    boundary = time(reset_hour, reset_minute)
    if local.time() < boundary:
        return local.date() - timedelta(days=1)
    return local.date()


def session_day_key(
    now: datetime, tz: tzinfo, reset_hour: int, reset_minute: int
) -> str:
    """Persisted key for the session day containing *now*."""
    day = session_day(now, tz, reset_hour, reset_minute)
    return f"{SESSION_KEY_PREFIX}{day.isoformat()}"


def next_reset_boundary(
    now: datetime, tz: tzinfo, reset_hour: int, reset_minute: int
) -> datetime:
    """The next instant at which the session day rolls over, as aware UTC."""
    day = session_day(now, tz, reset_hour, reset_minute) + timedelta(days=1)
    local = datetime.combine(day, time(reset_hour, reset_minute), tzinfo=tz)
    return local.astimezone(UTC)
