"""
pathfinder.services.event_service — Event CRUD & Status Snapshot
==================================================================

Persistence-facing operations on ``events``.  Each function opens its own
session through :func:`get_session` and returns plain dicts so callers can
use the data after the session closes.

Edit rules:

- Only the organizer (``created_by``) may update or delete an event.
- Updates are refused while an occurrence is live; deletes are not.
- Deleting an event discards its batches and memberships.

Every write re-validates the resulting :class:`EventDefinition` before
committing, so a bad rule never reaches the table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select

from pathfinder.constants import MAX_PARTICIPANTS_PER_BATCH, format_duration
from pathfinder.database.engine import get_session
from pathfinder.database.models import Event, definition_from_row
from pathfinder.engine.phases import Phase, phase_at
from pathfinder.engine.recurrence import (
    EventDefinition,
    NoRecurrence,
    PhaseDurations,
    RecurrenceRule,
    describe_rule,
    is_live,
    next_occurrence,
    rule_to_document,
)
from pathfinder.engine.timeutils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


class EventNotFound(LookupError):
    """No event with the requested id."""


class EventNotEditable(Exception):
    """The caller may not change the event right now.

    ``reason`` is ``"not_organizer"`` or ``"live"``.
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


# Columns an organizer may change through :func:`update_event`.
EDITABLE_FIELDS = frozenset({
    "title",
    "description",
    "start_at",
    "timezone",
    "phase_durations",
    "recurrence",
    "capacity_per_batch",
})


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def event_to_dict(event: Event) -> dict[str, Any]:
    definition = definition_from_row(event)
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "created_by": event.created_by,
        "start_at": definition.start_instant.isoformat(),
        "timezone": event.timezone,
        "phase_durations": {
            "arrival": event.arrival_seconds,
            "practice": event.practice_seconds,
            "close": event.close_seconds,
        },
        "capacity_per_batch": event.capacity_per_batch,
        "recurrence": rule_to_document(definition.recurrence),
        "recurrence_label": describe_rule(definition.recurrence),
        "has_small_batches_with_full_others": bool(event.has_small_batches_with_full_others),
        "small_batch_numbers": list(event.small_batch_numbers or []),
    }


def _apply_durations(event: Event, durations: PhaseDurations) -> None:
    event.arrival_seconds = durations.arrival
    event.practice_seconds = durations.practice
    event.close_seconds = durations.close


def _load(session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise EventNotFound(f"Event {event_id} not found")
    return event


def _require_organizer(event: Event, user_id: str) -> None:
    if event.created_by != user_id:
        raise EventNotEditable(
            "Only the organizer can change this event", reason="not_organizer"
        )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_event(
    engine: Engine,
    *,
    title: str,
    created_by: str,
    start_at: datetime,
    phase_durations: PhaseDurations,
    recurrence: RecurrenceRule | None = None,
    capacity_per_batch: int = MAX_PARTICIPANTS_PER_BATCH,
    timezone: str = "UTC",
    description: str | None = None,
) -> dict[str, Any]:
    """Insert a new event and return it as a dict.

    Raises ``ValueError`` (including ``InvalidRecurrenceRule``) for invalid
    definitions.
    """
    recurrence = recurrence or NoRecurrence()
    # Validates the whole definition before anything is written
    EventDefinition(
        id="new",
        start_instant=start_at,
        phase_durations=phase_durations,
        recurrence=recurrence,
        capacity_per_batch=capacity_per_batch,
        created_by=created_by,
        timezone=timezone,
    )

    with get_session(engine) as session:
        event = Event(
            title=title,
            description=description,
            created_by=created_by,
            start_at=start_at.astimezone(UTC),
            timezone=timezone,
            capacity_per_batch=capacity_per_batch,
            recurrence=rule_to_document(recurrence),
        )
        _apply_durations(event, phase_durations)
        session.add(event)
        session.flush()
        logger.info(
            "Event %s created by %s (%s)",
            event.id, created_by, describe_rule(recurrence),
        )
        return event_to_dict(event)


def get_event(engine: Engine, event_id: str) -> dict[str, Any]:
    with get_session(engine) as session:
        return event_to_dict(_load(session, event_id))


def get_event_definition(engine: Engine, event_id: str) -> EventDefinition:
    """The engine's immutable view of a stored event."""
    with get_session(engine) as session:
        return definition_from_row(_load(session, event_id))


def list_events(engine: Engine, *, created_by: str | None = None) -> list[dict[str, Any]]:
    """All events ordered by anchor, optionally only one organizer's."""
    with get_session(engine) as session:
        stmt = select(Event).order_by(Event.start_at)
        if created_by is not None:
            stmt = stmt.where(Event.created_by == created_by)
        return [event_to_dict(e) for e in session.scalars(stmt).all()]


def update_event(
    engine: Engine,
    event_id: str,
    user_id: str,
    changes: dict[str, Any],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Apply *changes* (a subset of :data:`EDITABLE_FIELDS`).

    ``phase_durations`` must be a :class:`PhaseDurations` and
    ``recurrence`` a rule object.

    Raises
    ------
    EventNotFound
        Unknown *event_id*.
    EventNotEditable
        *user_id* is not the organizer, or an occurrence is live at *now*.
    ValueError
        Unknown field, or the edited definition is invalid.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
    now = ensure_aware(now) if now is not None else utc_now()

    with get_session(engine) as session:
        event = _load(session, event_id)
        _require_organizer(event, user_id)
        if is_live(definition_from_row(event), now):
            raise EventNotEditable(
                "Event cannot be edited while an occurrence is live", reason="live"
            )

        for name, value in changes.items():
            if name == "phase_durations":
                _apply_durations(event, value)
            elif name == "recurrence":
                event.recurrence = rule_to_document(value or NoRecurrence())
            elif name == "start_at":
                event.start_at = ensure_aware(value).astimezone(UTC)
            else:
                setattr(event, name, value)

        # Raises before commit if the edit produced an invalid definition
        definition_from_row(event)
        session.flush()
        logger.info("Event %s updated by %s: %s", event_id, user_id, sorted(changes))
        return event_to_dict(event)


def delete_event(engine: Engine, event_id: str, user_id: str) -> None:
    """Delete an event with its batches and memberships (organizer only)."""
    with get_session(engine) as session:
        event = _load(session, event_id)
        _require_organizer(event, user_id)
        session.delete(event)
    logger.info("Event %s deleted by %s", event_id, user_id)


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventStatus:
    """What an event page renders at one instant."""

    event_id: str
    next_occurrence: datetime | None
    occurrence_end: datetime | None
    is_live: bool
    phase: Phase
    elapsed_seconds: int
    phase_remaining_seconds: int
    chat_enabled: bool

    @property
    def countdown_label(self) -> str | None:
        """``"starts in"`` text before the occurrence, phase time left after."""
        if self.next_occurrence is None:
            return None
        if self.elapsed_seconds < 0:
            return format_duration(self.elapsed_seconds)
        return format_duration(self.phase_remaining_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "next_occurrence": self.next_occurrence.isoformat() if self.next_occurrence else None,
            "occurrence_end": self.occurrence_end.isoformat() if self.occurrence_end else None,
            "is_live": self.is_live,
            "phase": self.phase.value,
            "elapsed_seconds": self.elapsed_seconds,
            "phase_remaining_seconds": self.phase_remaining_seconds,
            "chat_enabled": self.chat_enabled,
            "countdown_label": self.countdown_label,
        }


def event_status(definition: EventDefinition, as_of: datetime) -> EventStatus:
    """Bundle next occurrence, live flag and phase reading for *as_of*."""
    start = next_occurrence(definition, as_of)
    if start is None:
        return EventStatus(
            event_id=definition.id,
            next_occurrence=None,
            occurrence_end=None,
            is_live=False,
            phase=Phase.ENDED,
            elapsed_seconds=0,
            phase_remaining_seconds=0,
            chat_enabled=False,
        )

    occurrence = definition.occurrence_at(start)
    reading = phase_at(definition, start, as_of)
    return EventStatus(
        event_id=definition.id,
        next_occurrence=occurrence.start,
        occurrence_end=occurrence.end,
        is_live=occurrence.contains(as_of),
        phase=reading.phase,
        elapsed_seconds=reading.elapsed_seconds,
        phase_remaining_seconds=reading.phase_remaining_seconds,
        chat_enabled=reading.chat_enabled,
    )
