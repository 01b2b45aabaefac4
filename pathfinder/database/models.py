"""
pathfinder.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- events             — Event definitions (anchor, phases, recurrence document)
                       plus the small-batch flags written by the
                       reassignment job
- event_batches      — Numbered batches opened for an event
- batch_participants — Membership rows; unique per (event, user) so a user
                       can only ever sit in one batch
- kv_store           — Small string key/value table backing the session
                       budget across processes
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pathfinder.constants import MAX_PARTICIPANTS_PER_BATCH
from pathfinder.engine.batching import Batch
from pathfinder.engine.recurrence import (
    EventDefinition,
    PhaseDurations,
    rule_from_document,
)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Pathfinder ORM models."""


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Events — one row per scheduled (possibly recurring) event
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    arrival_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    practice_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    close_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity_per_batch: Mapped[int] = mapped_column(
        Integer, nullable=False, default=MAX_PARTICIPANTS_PER_BATCH
    )
    # {"type": "weekly", "interval": 2, "daysOfWeek": [1, 3], ...}
    recurrence: Mapped[dict | None] = mapped_column(JSONB, default=None)

    # Written by the reassignment job
    has_small_batches_with_full_others: Mapped[bool] = mapped_column(Boolean, default=False)
    small_batch_numbers: Mapped[list | None] = mapped_column(JSONB, default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    batches: Mapped[list[EventBatch]] = relationship(
        back_populates="event", cascade="all, delete-orphan",
        order_by="EventBatch.batch_number",
    )
    participants: Mapped[list[BatchParticipant]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_events_start_at", "start_at"),
        Index("ix_events_created_by", "created_by"),
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id} title={self.title!r}>"


# ---------------------------------------------------------------------------
# EventBatch — a numbered capacity-bounded group within an event
# ---------------------------------------------------------------------------
class EventBatch(Base):
    __tablename__ = "event_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped[Event] = relationship(back_populates="batches")

    __table_args__ = (
        UniqueConstraint("event_id", "batch_number", name="uq_event_batches_event_number"),
    )

    def __repr__(self) -> str:
        return f"<EventBatch event={self.event_id} number={self.batch_number}>"


# ---------------------------------------------------------------------------
# BatchParticipant — membership, at most one row per (event, user)
# ---------------------------------------------------------------------------
class BatchParticipant(Base):
    __tablename__ = "batch_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped[Event] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_batch_participants_event_user"),
        Index("ix_batch_participants_event_batch", "event_id", "batch_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchParticipant event={self.event_id} "
            f"batch={self.batch_number} user={self.user_id!r}>"
        )


# ---------------------------------------------------------------------------
# KeyValue — string store for the session budget
# ---------------------------------------------------------------------------
class KeyValue(Base):
    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<KeyValue key={self.key!r}>"


# ---------------------------------------------------------------------------
# Row → engine value objects
# ---------------------------------------------------------------------------
def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def definition_from_row(event: Event) -> EventDefinition:
    """Build the immutable :class:`EventDefinition` the engine works on."""
    start = _as_utc(event.start_at)
    return EventDefinition(
        id=event.id,
        start_instant=start,
        phase_durations=PhaseDurations(
            arrival=event.arrival_seconds,
            practice=event.practice_seconds,
            close=event.close_seconds,
        ),
        recurrence=rule_from_document(event.recurrence, anchor=start),
        capacity_per_batch=event.capacity_per_batch,
        created_by=event.created_by,
        timezone=event.timezone,
    )


def batches_from_rows(
    batches: list[EventBatch], participants: list[BatchParticipant]
) -> list[Batch]:
    """Group membership rows into engine :class:`Batch` snapshots.

    Batches that exist only through participant rows are included too.
    """
    members: dict[int, set[str]] = {b.batch_number: set() for b in batches}
    for row in participants:
        members.setdefault(row.batch_number, set()).add(row.user_id)
    return [
        Batch(batch_number=number, participants=frozenset(users))
        for number, users in sorted(members.items())
    ]
