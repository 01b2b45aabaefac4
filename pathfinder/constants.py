"""
pathfinder.constants — Shared Constants & Helpers
===================================================

Single source of truth for deployment-wide defaults (usage limits, batch
sizing, reset time) and the duration formatter used by countdowns.
Import from here instead of duplicating in services and API routes.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Usage limits
# ---------------------------------------------------------------------------
DAILY_TIME_LIMIT_MINUTES = 21

# Local time-of-day at which the daily budget resets (03:20)
TIMER_RESET_HOUR = 3
TIMER_RESET_MINUTE = 20

# Persisted budget keys look like ``tpf_session_2025-01-31``
SESSION_KEY_PREFIX = "tpf_session_"

# ---------------------------------------------------------------------------
# Event batching
# ---------------------------------------------------------------------------
MAX_PARTICIPANTS_PER_BATCH = 21

# Max size of a trailing group that overflows into a full batch instead of
# being left alone in a new one
BATCH_OVERFLOW_THRESHOLD = 6

# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------
MAX_RECURRENCE_STEPS = 1000

# Index 0 is Sunday, matching stored recurrence documents
WEEKDAY_NAMES: list[str] = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
WEEKDAY_FULL_NAMES: list[str] = [
    "Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday",
]

# ---------------------------------------------------------------------------
# Polling intervals (seconds)
# ---------------------------------------------------------------------------
PHASE_TICK_SECONDS = 1.0
BUDGET_TICK_SECONDS = 1.0
BATCH_REFRESH_SECONDS = 10.0
ROLLOVER_CHECK_SECONDS = 60.0

# Finished events are purged this many days after their last occurrence ends
EVENT_RETENTION_DAYS = 7


# ---------------------------------------------------------------------------
# Duration formatting
# ---------------------------------------------------------------------------
_MINUTE = 60
_HOUR = 3600
_DAY = 86400
_WEEK = 604800
_MONTH = 2592000  # 30 days
_YEAR = 31536000  # 365 days


def format_duration(seconds: int | float) -> str:
    """Render *seconds* as a compact countdown label.

    The sign is ignored so a negative pre-start elapsed value reads as
    "starts in …".  Only the three most significant units are shown once
    the span reaches days::

        >>> format_duration(75)
        '1m 15s'
        >>> format_duration(-90061)
        '1d 1h 1m'
    """
    diff = abs(int(seconds))

    years, rem = divmod(diff, _YEAR)
    months, rem = divmod(rem, _MONTH)
    weeks, rem = divmod(rem, _WEEK)
    days, rem = divmod(rem, _DAY)
    hours, rem = divmod(rem, _HOUR)
    minutes, secs = divmod(rem, _MINUTE)

    if years > 0:
        return f"{years}y {months}mo {weeks}w"
    if months > 0:
        return f"{months}mo {weeks}w {days}d"
    if weeks > 0:
        return f"{weeks}w {days}d {hours}h"
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def ordinal(n: int) -> str:
    """English ordinal label: 1 → '1st', 12 → '12th', 23 → '23rd'."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"
