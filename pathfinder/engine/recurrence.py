"""
pathfinder.engine.recurrence — Recurrence Rules & Next-Occurrence Evaluator
=============================================================================

Pure calculation, no DB I/O.  An :class:`EventDefinition` plus an "as of"
instant yields the occurrence currently in progress (or the next one to
start), or ``None`` once the event is permanently finished.

Rule shapes (tagged union)::

    NoRecurrence
    Daily(interval_days)
    Weekly(interval_weeks, days_of_week)
    MonthlyByDate(interval_months, day_of_month)
    MonthlyByWeekday(interval_months, ordinal, weekday)

Weekdays are numbered 0 = Sunday … 6 = Saturday, as stored in event
documents.  Stepping happens on local wall time in the event's time zone,
so a 07:00 practice stays at 07:00 across DST changes.
"""

from __future__ import annotations

import calendar
import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from pathfinder.constants import (
    MAX_PARTICIPANTS_PER_BATCH,
    MAX_RECURRENCE_STEPS,
    WEEKDAY_FULL_NAMES,
    WEEKDAY_NAMES,
)
from pathfinder.constants import ordinal as ordinal_label
from pathfinder.engine.timeutils import ensure_aware

logger = logging.getLogger(__name__)

__all__ = [
    "Daily",
    "EventDefinition",
    "InvalidRecurrenceRule",
    "MonthlyByDate",
    "MonthlyByWeekday",
    "NoRecurrence",
    "Occurrence",
    "PhaseDurations",
    "RecurrenceLimitExceeded",
    "RecurrenceRule",
    "RecurrenceType",
    "Weekly",
    "current_occurrence",
    "describe_rule",
    "is_live",
    "next_occurrence",
    "nth_weekday_of_month",
    "rule_from_document",
    "rule_to_document",
    "upcoming_occurrences",
]


class RecurrenceType(enum.StrEnum):
    """Discriminator values used in stored ``repeatability`` documents."""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY_DATE = "monthly_date"
    MONTHLY_DAY = "monthly_day"


class InvalidRecurrenceRule(ValueError):
    """A rule field is out of range.  Raised at construction time."""


class RecurrenceLimitExceeded(RuntimeError):
    """Stepping ran past :data:`MAX_RECURRENCE_STEPS` without a result."""


def _require_interval(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidRecurrenceRule(f"{name} must be an integer >= 1, got {value!r}")


def _require_weekday(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
        raise InvalidRecurrenceRule(f"{name} must be in 0..6 (0 = Sunday), got {value!r}")


# ---------------------------------------------------------------------------
# Rule variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NoRecurrence:
    """A one-off event."""

    kind: ClassVar[RecurrenceType] = RecurrenceType.NONE


@dataclass(frozen=True, slots=True)
class Daily:
    interval_days: int = 1

    kind: ClassVar[RecurrenceType] = RecurrenceType.DAILY

    def __post_init__(self) -> None:
        _require_interval(self.interval_days, "interval_days")


@dataclass(frozen=True, slots=True)
class Weekly:
    """Every *interval_weeks* weeks on the anchor's weekday.

    ``days_of_week`` is validated and shown to users, but stepping only
    visits the anchor day in whole-week jumps.
    """

    interval_weeks: int = 1
    days_of_week: frozenset[int] = frozenset()

    kind: ClassVar[RecurrenceType] = RecurrenceType.WEEKLY

    def __post_init__(self) -> None:
        _require_interval(self.interval_weeks, "interval_weeks")
        days = frozenset(self.days_of_week)
        for day in days:
            _require_weekday(day, "days_of_week entry")
        object.__setattr__(self, "days_of_week", days)


@dataclass(frozen=True, slots=True)
class MonthlyByDate:
    """Every *interval_months* months on *day_of_month*, clamped to month end."""

    interval_months: int = 1
    day_of_month: int = 1

    kind: ClassVar[RecurrenceType] = RecurrenceType.MONTHLY_DATE

    def __post_init__(self) -> None:
        _require_interval(self.interval_months, "interval_months")
        dom = self.day_of_month
        if isinstance(dom, bool) or not isinstance(dom, int) or not 1 <= dom <= 31:
            raise InvalidRecurrenceRule(f"day_of_month must be in 1..31, got {dom!r}")


@dataclass(frozen=True, slots=True)
class MonthlyByWeekday:
    """Every *interval_months* months on the Nth (or last, -1) *weekday*."""

    interval_months: int = 1
    ordinal: int = 1
    weekday: int = 0

    kind: ClassVar[RecurrenceType] = RecurrenceType.MONTHLY_DAY

    def __post_init__(self) -> None:
        _require_interval(self.interval_months, "interval_months")
        if isinstance(self.ordinal, bool) or self.ordinal not in (1, 2, 3, 4, -1):
            raise InvalidRecurrenceRule(
                f"ordinal must be 1..4 or -1 (last), got {self.ordinal!r}"
            )
        _require_weekday(self.weekday, "weekday")


RecurrenceRule = NoRecurrence | Daily | Weekly | MonthlyByDate | MonthlyByWeekday


# ---------------------------------------------------------------------------
# Event definition & occurrences
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PhaseDurations:
    """Arrival / practice / close lengths in seconds."""

    arrival: int = 0
    practice: int = 0
    close: int = 0

    def __post_init__(self) -> None:
        for name in ("arrival", "practice", "close"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} duration must not be negative, got {value}")

    @property
    def total(self) -> int:
        return self.arrival + self.practice + self.close


@dataclass(frozen=True, slots=True)
class Occurrence:
    """One concrete instance of an event.  Derived, never stored."""

    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True, slots=True)
class EventDefinition:
    """Immutable scheduling view of a stored event.

    Edits produce a new definition; the engine never mutates one.
    """

    id: str
    start_instant: datetime
    phase_durations: PhaseDurations
    recurrence: RecurrenceRule = field(default_factory=NoRecurrence)
    capacity_per_batch: int = MAX_PARTICIPANTS_PER_BATCH
    created_by: str = ""
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        ensure_aware(self.start_instant)
        if self.capacity_per_batch < 1:
            raise ValueError("capacity_per_batch must be >= 1")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {self.timezone!r}") from exc

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.phase_durations.total)

    def occurrence_at(self, start: datetime) -> Occurrence:
        return Occurrence(start=start, end=start + self.duration)


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------
def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


# dateutil weekdays indexed Sunday-first, matching stored documents
_RD_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)


def nth_weekday_of_month(year: int, month: int, nth: int, weekday: int) -> int | None:
    """Day-of-month of the *nth* *weekday* (0 = Sunday), or None.

    ``nth == -1`` selects the last one.  Returns None when the month has
    fewer than *nth* such weekdays (e.g. a 5th Monday).
    """
    first = date(year, month, 1)
    rd_weekday = _RD_WEEKDAYS[weekday]
    if nth == -1:
        return (first + relativedelta(day=31, weekday=rd_weekday(-1))).day
    if nth < 1:
        return None
    match = first + relativedelta(weekday=rd_weekday(+nth))
    return match.day if match.month == month else None


def _to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz).replace(tzinfo=None)


def _to_instant(local: datetime, tz: ZoneInfo) -> datetime:
    return local.replace(tzinfo=tz).astimezone(UTC)


# ---------------------------------------------------------------------------
# Stepping (all on naive local wall time)
# ---------------------------------------------------------------------------
def _align(rule: RecurrenceRule, anchor: datetime) -> datetime | None:
    """First rule-matching slot on/after *anchor* inside the anchor's month.

    Daily and weekly rules match the anchor itself.  None means the anchor
    month has no matching slot left and a full step is needed.
    """
    if isinstance(rule, MonthlyByDate):
        day = min(rule.day_of_month, _days_in_month(anchor.year, anchor.month))
        candidate = anchor.replace(day=day)
    elif isinstance(rule, MonthlyByWeekday):
        day = nth_weekday_of_month(anchor.year, anchor.month, rule.ordinal, rule.weekday)
        if day is None:
            return None
        candidate = anchor.replace(day=day)
    else:
        return anchor
    return candidate if candidate >= anchor else None


def _step(rule: RecurrenceRule, cursor: datetime) -> tuple[datetime, bool]:
    """Apply one step of *rule* to *cursor*.

    Returns ``(new_cursor, valid)``; *valid* is False when the target month
    has no matching slot, in which case the caller steps again from the
    returned cursor (the 1st of that month).
    """
    if isinstance(rule, Daily):
        return cursor + timedelta(days=rule.interval_days), True
    if isinstance(rule, Weekly):
        return cursor + timedelta(days=7 * rule.interval_weeks), True
    if isinstance(rule, MonthlyByDate):
        target = cursor + relativedelta(months=rule.interval_months)
        day = min(rule.day_of_month, _days_in_month(target.year, target.month))
        return target.replace(day=day), True
    if isinstance(rule, MonthlyByWeekday):
        first = cursor.replace(day=1) + relativedelta(months=rule.interval_months)
        day = nth_weekday_of_month(first.year, first.month, rule.ordinal, rule.weekday)
        if day is None:
            return first, False
        return first.replace(day=day), True
    raise ValueError(f"Rule {rule!r} has no step function")


def _fast_forward(
    rule: RecurrenceRule, cursor: datetime, as_of: datetime, duration: timedelta
) -> datetime:
    """Jump a fixed-interval rule close to *as_of* without per-step iteration.

    Keeps enough whole periods in hand that no occurrence still running at
    *as_of* is skipped, even when occurrences last longer than a period.
    """
    if isinstance(rule, Daily):
        period = rule.interval_days
    elif isinstance(rule, Weekly):
        period = 7 * rule.interval_weeks
    else:
        return cursor
    elapsed_days = (as_of.date() - cursor.date()).days
    skip = elapsed_days // period - (duration.days // period + 2)
    if skip > 0:
        cursor += timedelta(days=skip * period)
    return cursor


def _iter_starts(definition: EventDefinition, as_of: datetime) -> Iterator[datetime]:
    """Yield candidate occurrence starts in order, as aware UTC instants.

    Raises :class:`RecurrenceLimitExceeded` once the step budget is spent.
    """
    rule = definition.recurrence
    tz = definition.tz
    anchor = _to_local(definition.start_instant, tz)

    aligned = _align(rule, anchor)
    if aligned is not None:
        yield _to_instant(aligned, tz)
        cursor = _fast_forward(rule, aligned, _to_local(as_of, tz), definition.duration)
        if cursor != aligned:
            yield _to_instant(cursor, tz)
    else:
        cursor = anchor

    steps = 0
    while True:
        steps += 1
        if steps > MAX_RECURRENCE_STEPS:
            raise RecurrenceLimitExceeded(
                f"no occurrence within {MAX_RECURRENCE_STEPS} steps"
            )
        cursor, valid = _step(rule, cursor)
        if valid:
            yield _to_instant(cursor, tz)


# ---------------------------------------------------------------------------
# Public evaluator
# ---------------------------------------------------------------------------
def next_occurrence(definition: EventDefinition, as_of: datetime) -> datetime | None:
    """Start of the occurrence in progress at *as_of*, or of the next one.

    Never returns an occurrence that has fully elapsed (``end <= as_of``).
    Returns None when a one-off event has finished, or when stepping hits
    the iteration cap (logged as an internal inconsistency).
    """
    ensure_aware(as_of)
    duration = definition.duration

    if isinstance(definition.recurrence, NoRecurrence):
        start = definition.start_instant
        return start if start + duration > as_of else None

    try:
        for start in _iter_starts(definition, as_of):
            if start + duration > as_of:
                return start
    except RecurrenceLimitExceeded:
        logger.error(
            "Recurrence for event %s exceeded %d steps (rule=%r, as_of=%s); "
            "treating as finished",
            definition.id, MAX_RECURRENCE_STEPS, definition.recurrence,
            as_of.isoformat(),
        )
    return None


def current_occurrence(
    definition: EventDefinition, as_of: datetime
) -> Occurrence | None:
    """The :class:`Occurrence` picked by :func:`next_occurrence`, if any."""
    start = next_occurrence(definition, as_of)
    if start is None:
        return None
    return definition.occurrence_at(start)


def is_live(definition: EventDefinition, as_of: datetime) -> bool:
    """True iff an occurrence is in progress at *as_of* (inclusive bounds)."""
    occurrence = current_occurrence(definition, as_of)
    return occurrence is not None and occurrence.contains(as_of)


def upcoming_occurrences(
    definition: EventDefinition, as_of: datetime, limit: int = 5
) -> list[Occurrence]:
    """Up to *limit* consecutive occurrences starting from the current one."""
    results: list[Occurrence] = []
    cursor = as_of
    while len(results) < limit:
        occurrence = current_occurrence(definition, cursor)
        if occurrence is None:
            break
        results.append(occurrence)
        if isinstance(definition.recurrence, NoRecurrence):
            break
        cursor = occurrence.end
    return results


# ---------------------------------------------------------------------------
# Stored document shape
# ---------------------------------------------------------------------------
def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRecurrenceRule(f"{name} must be an integer, got {value!r}") from exc


def _doc_int(doc: dict, name: str, default: int) -> int:
    """Integer field of *doc*; *default* only when the key is absent or null."""
    value = doc.get(name)
    return default if value is None else _as_int(value, name)


def rule_from_document(
    doc: dict | None, *, anchor: datetime | None = None
) -> RecurrenceRule:
    """Parse a stored ``repeatability`` document into a rule.

    Missing or ``type == "none"`` documents mean a one-off event.  A
    ``monthly_date`` document without ``dayOfMonth`` uses *anchor*'s day;
    ``weekOfMonth`` of 5 is read as "last".
    """
    if not doc:
        return NoRecurrence()

    raw_type = doc.get("type", RecurrenceType.NONE)
    try:
        kind = RecurrenceType(raw_type)
    except ValueError:
        raise InvalidRecurrenceRule(f"Unknown recurrence type: {raw_type!r}") from None

    interval = _doc_int(doc, "interval", 1)

    if kind is RecurrenceType.NONE:
        return NoRecurrence()
    if kind is RecurrenceType.DAILY:
        return Daily(interval_days=interval)
    if kind is RecurrenceType.WEEKLY:
        days = frozenset(_as_int(d, "daysOfWeek") for d in doc.get("daysOfWeek") or ())
        return Weekly(interval_weeks=interval, days_of_week=days)
    if kind is RecurrenceType.MONTHLY_DATE:
        default_day = anchor.day if anchor is not None else 1
        day = _doc_int(doc, "dayOfMonth", default_day)
        return MonthlyByDate(interval_months=interval, day_of_month=day)

    week = _doc_int(doc, "weekOfMonth", 1)
    if week == 5:
        week = -1
    weekday = _doc_int(doc, "dayOfWeekForMonthly", 0)
    return MonthlyByWeekday(interval_months=interval, ordinal=week, weekday=weekday)


def rule_to_document(rule: RecurrenceRule) -> dict[str, Any]:
    """Inverse of :func:`rule_from_document`."""
    doc: dict[str, Any] = {"type": rule.kind.value, "interval": 1, "daysOfWeek": []}
    if isinstance(rule, Daily):
        doc["interval"] = rule.interval_days
    elif isinstance(rule, Weekly):
        doc["interval"] = rule.interval_weeks
        doc["daysOfWeek"] = sorted(rule.days_of_week)
    elif isinstance(rule, MonthlyByDate):
        doc["interval"] = rule.interval_months
        doc["dayOfMonth"] = rule.day_of_month
    elif isinstance(rule, MonthlyByWeekday):
        doc["interval"] = rule.interval_months
        doc["weekOfMonth"] = rule.ordinal
        doc["dayOfWeekForMonthly"] = rule.weekday
    return doc


def describe_rule(rule: RecurrenceRule) -> str:
    """Human label shown next to an event title."""
    if isinstance(rule, Daily):
        return f"Repeats every {rule.interval_days} day(s)"
    if isinstance(rule, Weekly):
        label = f"Repeats every {rule.interval_weeks} week(s)"
        if rule.days_of_week:
            names = ", ".join(WEEKDAY_NAMES[d] for d in sorted(rule.days_of_week))
            label += f" on {names}"
        return label
    if isinstance(rule, MonthlyByDate | MonthlyByWeekday):
        if rule.interval_months == 1:
            prefix = "Repeats monthly"
        else:
            prefix = f"Repeats every {rule.interval_months} months"
        if isinstance(rule, MonthlyByDate):
            return f"{prefix} on the {ordinal_label(rule.day_of_month)}"
        which = "last" if rule.ordinal == -1 else ordinal_label(rule.ordinal)
        return f"{prefix} on the {which} {WEEKDAY_FULL_NAMES[rule.weekday]}"
    return "Does not repeat"
