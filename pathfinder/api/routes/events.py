"""
pathfinder.api.routes.events — Event CRUD, status and batch join
==================================================================
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import Engine

from pathfinder.api.deps import get_config, get_engine, get_overflow_threshold, get_user_id
from pathfinder.config import PathfinderConfig
from pathfinder.engine.recurrence import PhaseDurations, RecurrenceType, rule_from_document
from pathfinder.engine.timeutils import ensure_aware, utc_now
from pathfinder.services import batch_service, event_service
from pathfinder.services.batch_service import BatchJoinConflict
from pathfinder.services.event_service import EventNotEditable, EventNotFound

router = APIRouter(prefix="/events", tags=["events"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RecurrenceIn(BaseModel):
    """Stored ``repeatability`` document shape."""

    type: RecurrenceType = RecurrenceType.NONE
    interval: int = Field(1, ge=1)
    daysOfWeek: list[Annotated[int, Field(ge=0, le=6)]] = Field(default_factory=list)
    dayOfMonth: int | None = Field(None, ge=1, le=31)
    weekOfMonth: int | None = None  # 1..4, or -1 / 5 for "last"
    dayOfWeekForMonthly: int | None = Field(None, ge=0, le=6)

    @field_validator("weekOfMonth")
    @classmethod
    def _check_week(cls, value: int | None) -> int | None:
        if value is not None and value not in (1, 2, 3, 4, 5, -1):
            raise ValueError("weekOfMonth must be 1..4, or -1 / 5 for the last week")
        return value


class PhaseDurationsIn(BaseModel):
    arrival: int = Field(0, ge=0)
    practice: int = Field(0, ge=0)
    close: int = Field(0, ge=0)

    def to_engine(self) -> PhaseDurations:
        return PhaseDurations(arrival=self.arrival, practice=self.practice, close=self.close)


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    start_at: datetime
    timezone: str = "UTC"
    phase_durations: PhaseDurationsIn
    recurrence: RecurrenceIn | None = None
    capacity_per_batch: int | None = Field(None, ge=1)  # Defaults to config


class EventUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    start_at: datetime | None = None
    timezone: str | None = None
    phase_durations: PhaseDurationsIn | None = None
    recurrence: RecurrenceIn | None = None
    capacity_per_batch: int | None = Field(None, ge=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
@contextmanager
def _service_errors() -> Iterator[None]:
    """Translate service exceptions into HTTP responses."""
    try:
        yield
    except EventNotFound as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
    except EventNotEditable as exc:
        code = (
            status.HTTP_403_FORBIDDEN if exc.reason == "not_organizer"
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(code, str(exc)) from exc
    except BatchJoinConflict as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc


def _rule(recurrence: RecurrenceIn | None, anchor: datetime):
    doc = recurrence.model_dump(mode="json") if recurrence is not None else None
    return rule_from_document(doc, anchor=anchor)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.post("", status_code=status.HTTP_201_CREATED)
def create_event(
    body: EventCreate,
    user_id: str = Depends(get_user_id),
    config: PathfinderConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
):
    with _service_errors():
        start_at = ensure_aware(body.start_at)
        return event_service.create_event(
            engine,
            title=body.title,
            description=body.description,
            created_by=user_id,
            start_at=start_at,
            timezone=body.timezone,
            phase_durations=body.phase_durations.to_engine(),
            recurrence=_rule(body.recurrence, start_at),
            capacity_per_batch=body.capacity_per_batch or config.max_participants_per_batch,
        )


@router.get("")
def list_events(
    created_by: str | None = Query(None),
    engine: Engine = Depends(get_engine),
):
    return {"events": event_service.list_events(engine, created_by=created_by)}


@router.get("/{event_id}")
def get_event(event_id: str, engine: Engine = Depends(get_engine)):
    with _service_errors():
        return event_service.get_event(engine, event_id)


@router.put("/{event_id}")
def update_event(
    event_id: str,
    body: EventUpdate,
    user_id: str = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
):
    fields = body.model_fields_set
    if not fields:
        raise HTTPException(400, "No fields to update")

    with _service_errors():
        changes: dict[str, Any] = {}
        for name in ("title", "description", "timezone", "capacity_per_batch"):
            if name in fields:
                changes[name] = getattr(body, name)
        if "start_at" in fields:
            if body.start_at is None:
                raise ValueError("start_at cannot be cleared")
            changes["start_at"] = ensure_aware(body.start_at)
        if "phase_durations" in fields:
            if body.phase_durations is None:
                raise ValueError("phase_durations cannot be cleared")
            changes["phase_durations"] = body.phase_durations.to_engine()
        if "recurrence" in fields:
            anchor = changes.get("start_at") or event_service.get_event_definition(
                engine, event_id
            ).start_instant
            changes["recurrence"] = _rule(body.recurrence, anchor)

        return event_service.update_event(engine, event_id, user_id, changes)


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_event(
    event_id: str,
    user_id: str = Depends(get_user_id),
    engine: Engine = Depends(get_engine),
):
    with _service_errors():
        event_service.delete_event(engine, event_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Live status
# ---------------------------------------------------------------------------
@router.get("/{event_id}/status")
def get_event_status(
    event_id: str,
    at: datetime | None = Query(None, description="Evaluate at this instant (ISO 8601)"),
    engine: Engine = Depends(get_engine),
):
    with _service_errors():
        as_of = ensure_aware(at) if at is not None else utc_now()
        definition = event_service.get_event_definition(engine, event_id)
        return event_service.event_status(definition, as_of).to_dict()


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------
@router.get("/{event_id}/batches")
def get_batches(
    event_id: str,
    overflow_threshold: int = Depends(get_overflow_threshold),
    engine: Engine = Depends(get_engine),
):
    with _service_errors():
        options = batch_service.list_batch_options(engine, event_id, overflow_threshold)
    return {
        "event_id": event_id,
        "batches": [
            {
                "batch_number": o.batch_number,
                "size": o.size,
                "joinable": o.joinable,
                "is_new": o.is_new,
            }
            for o in options
        ],
    }


@router.post("/{event_id}/join")
def join_event(
    event_id: str,
    user_id: str = Depends(get_user_id),
    overflow_threshold: int = Depends(get_overflow_threshold),
    engine: Engine = Depends(get_engine),
):
    with _service_errors():
        assignment = batch_service.join_event(engine, event_id, user_id, overflow_threshold)
    return batch_service.assignment_to_dict(assignment)
