"""
pathfinder.services.retention_service — Finished Event Cleanup
================================================================

Periodic removal of events that are over for good: no next occurrence,
and the final occurrence ended more than ``retention_days`` ago (7 by
default).  Batches and memberships go with them.

Only one-off events ever finish.  A recurring event whose evaluator gives
up (iteration cap) is reported and left alone: its final end is unknown.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, select

from pathfinder.constants import EVENT_RETENTION_DAYS
from pathfinder.database.engine import get_session
from pathfinder.database.models import Event, definition_from_row
from pathfinder.engine.recurrence import NoRecurrence, next_occurrence
from pathfinder.engine.timeutils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


def cleanup_finished_events(
    engine: Engine,
    retention_days: int = EVENT_RETENTION_DAYS,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Delete finished events older than the retention window.

    Returns ``{"events_deleted": N, "events_skipped": M}``.
    """
    now = ensure_aware(now) if now is not None else utc_now()
    cutoff = now - timedelta(days=retention_days)
    deleted = 0
    skipped = 0

    with get_session(engine) as session:
        for event in session.scalars(select(Event)).all():
            try:
                definition = definition_from_row(event)
            except ValueError:
                logger.exception("Event %s has an invalid definition; skipping", event.id)
                skipped += 1
                continue

            if next_occurrence(definition, now) is not None:
                continue
            if not isinstance(definition.recurrence, NoRecurrence):
                logger.warning(
                    "Recurring event %s has no next occurrence; not deleting", event.id,
                )
                skipped += 1
                continue

            final_end = definition.start_instant + definition.duration
            if final_end < cutoff:
                session.delete(event)
                deleted += 1
                logger.info(
                    "Retention: deleted event %s (ended %s)", event.id, final_end.isoformat(),
                )

    logger.info(
        "Retention cleanup complete — %d events removed, %d skipped "
        "(retention_days=%d, cutoff=%s)",
        deleted, skipped, retention_days, cutoff.isoformat(),
    )
    return {"events_deleted": deleted, "events_skipped": skipped}
