"""
pathfinder.services.batch_service — Batch Join & Reassignment Flags
=====================================================================

Persists the decisions made by :mod:`pathfinder.engine.batching`.

**Join protocol** (one transaction per attempt):

1. Lock the event row (``SELECT … FOR UPDATE`` on PostgreSQL) and read a
   fresh batch snapshot.
2. Ask :func:`plan_join` where the user goes.
3. Insert the membership row inside a SAVEPOINT.  The unique
   ``(event_id, user_id)`` constraint rejects double assignment, and the
   batch size is re-checked against what the planner allowed.
4. On a lost race, raise :class:`BatchJoinConflict`; :func:`join_event`
   retries with a fresh snapshot a bounded number of times.

The small-batch flags on ``events`` are recomputed in the same
transaction, and by :func:`run_batch_reassignment` for a full sweep.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pathfinder.constants import BATCH_OVERFLOW_THRESHOLD
from pathfinder.database.engine import get_session
from pathfinder.database.models import (
    BatchParticipant,
    Event,
    EventBatch,
    batches_from_rows,
)
from pathfinder.engine.batching import (
    Batch,
    BatchAssignment,
    BatchOption,
    BatchPolicy,
    batch_options,
    plan_join,
    small_batches_with_full_others,
)
from pathfinder.services.event_service import EventNotFound

logger = logging.getLogger(__name__)

JOIN_ATTEMPTS = 3


class BatchJoinConflict(Exception):
    """A concurrent join invalidated the snapshot.  Safe to retry."""


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
def _snapshot(session: Session, event_id: str) -> list[Batch]:
    batches = session.scalars(
        select(EventBatch).where(EventBatch.event_id == event_id)
    ).all()
    participants = session.scalars(
        select(BatchParticipant).where(BatchParticipant.event_id == event_id)
    ).all()
    return batches_from_rows(list(batches), list(participants))


def _load_event(session: Session, event_id: str, *, lock: bool = False) -> Event:
    stmt = select(Event).where(Event.id == event_id)
    if lock:
        stmt = stmt.with_for_update()
    event = session.scalar(stmt)
    if event is None:
        raise EventNotFound(f"Event {event_id} not found")
    return event


def _policy(event: Event, overflow_threshold: int) -> BatchPolicy:
    return BatchPolicy(event.capacity_per_batch, overflow_threshold)


def list_batches(engine: Engine, event_id: str) -> list[Batch]:
    """Current batches of an event, ascending by number."""
    with get_session(engine) as session:
        _load_event(session, event_id)
        return _snapshot(session, event_id)


def list_batch_options(
    engine: Engine,
    event_id: str,
    overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD,
) -> list[BatchOption]:
    """Join-screen listing: each batch's size and whether it accepts joins."""
    with get_session(engine) as session:
        event = _load_event(session, event_id)
        return batch_options(_snapshot(session, event_id), _policy(event, overflow_threshold))


# ---------------------------------------------------------------------------
# Small-batch flags
# ---------------------------------------------------------------------------
def _refresh_flags(event: Event, batches: list[Batch], policy: BatchPolicy) -> bool:
    """Write the small-batch flags onto *event*.  True if they changed."""
    small = small_batches_with_full_others(batches, policy)
    flagged = bool(small)
    previous = list(event.small_batch_numbers or [])
    if bool(event.has_small_batches_with_full_others) == flagged and previous == small:
        return False
    event.has_small_batches_with_full_others = flagged
    event.small_batch_numbers = small or None
    if flagged:
        logger.info(
            "Event %s has small batches %s while the others are full", event.id, small,
        )
    else:
        logger.info("Event %s small-batch flags cleared", event.id)
    return True


def run_batch_reassignment(
    engine: Engine,
    event_id: str | None = None,
    overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD,
) -> dict[str, int]:
    """Recompute small-batch flags for one event, or for every event.

    Returns ``{"events_checked": N, "events_changed": M}``.
    """
    checked = 0
    changed = 0
    with get_session(engine) as session:
        if event_id is not None:
            events = [_load_event(session, event_id)]
        else:
            events = list(session.scalars(select(Event)).all())

        for event in events:
            checked += 1
            batches = _snapshot(session, event.id)
            if _refresh_flags(event, batches, _policy(event, overflow_threshold)):
                changed += 1

    logger.debug("Batch reassignment: %d checked, %d changed", checked, changed)
    return {"events_checked": checked, "events_changed": changed}


# ---------------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------------
def _size_limit(plan: BatchAssignment, policy: BatchPolicy) -> int:
    if plan.overflow:
        return policy.capacity + policy.overflow_threshold
    return policy.capacity


def _attempt_join(
    engine: Engine, event_id: str, user_id: str, overflow_threshold: int
) -> BatchAssignment:
    with get_session(engine) as session:
        event = _load_event(session, event_id, lock=True)
        policy = _policy(event, overflow_threshold)
        plan = plan_join(_snapshot(session, event_id), policy, user_id)
        if plan.already_member:
            return plan

        try:
            with session.begin_nested():   # SAVEPOINT
                if plan.opens_new_batch:
                    session.add(EventBatch(event_id=event_id, batch_number=plan.batch_number))
                session.add(BatchParticipant(
                    event_id=event_id, batch_number=plan.batch_number, user_id=user_id,
                ))
                session.flush()

                size = session.scalar(
                    select(func.count()).select_from(BatchParticipant).where(
                        BatchParticipant.event_id == event_id,
                        BatchParticipant.batch_number == plan.batch_number,
                    )
                ) or 0
                if size > _size_limit(plan, policy):
                    raise BatchJoinConflict(
                        f"Batch {plan.batch_number} of event {event_id} filled up"
                    )
        except IntegrityError:
            # The SAVEPOINT was rolled back; the outer transaction is still usable.
            existing = session.scalar(
                select(BatchParticipant.batch_number).where(
                    BatchParticipant.event_id == event_id,
                    BatchParticipant.user_id == user_id,
                )
            )
            if existing is not None:
                return BatchAssignment(existing, already_member=True)
            raise BatchJoinConflict(
                f"Concurrent join on event {event_id} batch {plan.batch_number}"
            ) from None

        _refresh_flags(event, _snapshot(session, event_id), policy)
        logger.info(
            "User %s joined batch %d of event %s%s",
            user_id, plan.batch_number, event_id,
            " (overflow)" if plan.overflow else "",
        )
        return plan


def join_event(
    engine: Engine,
    event_id: str,
    user_id: str,
    overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD,
    *,
    attempts: int = JOIN_ATTEMPTS,
) -> BatchAssignment:
    """Add *user_id* to the batch chosen by the assigner.

    Re-joining returns the existing batch with ``already_member=True``.

    Raises
    ------
    EventNotFound
        Unknown *event_id*.
    BatchJoinConflict
        Every attempt lost a race.
    """
    for attempt in range(1, attempts + 1):
        try:
            return _attempt_join(engine, event_id, user_id, overflow_threshold)
        except BatchJoinConflict:
            if attempt == attempts:
                logger.warning(
                    "Giving up join of %s to event %s after %d attempts",
                    user_id, event_id, attempts,
                )
                raise
            logger.warning(
                "Join race on event %s (attempt %d/%d); retrying",
                event_id, attempt, attempts,
            )
    raise BatchJoinConflict(f"No join attempts allowed for event {event_id}")


def assignment_to_dict(assignment: BatchAssignment) -> dict[str, Any]:
    return {
        "batch_number": assignment.batch_number,
        "already_member": assignment.already_member,
        "opens_new_batch": assignment.opens_new_batch,
        "overflow": assignment.overflow,
    }
