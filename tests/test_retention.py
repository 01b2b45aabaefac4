"""Tests for finished-event retention cleanup."""

from __future__ import annotations

import logging
from datetime import timedelta

from conftest import STANDARD_PHASES, utc

from pathfinder.database.models import BatchParticipant, Event
from pathfinder.engine.recurrence import Daily
from pathfinder.services.batch_service import join_event
from pathfinder.services.event_service import create_event, list_events
from pathfinder.services.retention_service import cleanup_finished_events

START = utc(2025, 1, 1, 10, 0)
END = START + timedelta(minutes=30)


def _create(engine, **overrides) -> dict:
    fields = {
        "title": "Practice",
        "created_by": "organizer",
        "start_at": START,
        "phase_durations": STANDARD_PHASES,
    }
    fields.update(overrides)
    return create_event(engine, **fields)


class TestCleanupFinishedEvents:
    def test_deletes_after_retention_window(self, db_engine, db_session):
        event = _create(db_engine)
        join_event(db_engine, event["id"], "member")

        result = cleanup_finished_events(db_engine, now=END + timedelta(days=8))

        assert result == {"events_deleted": 1, "events_skipped": 0}
        assert list_events(db_engine) == []
        assert db_session.query(BatchParticipant).count() == 0

    def test_keeps_recently_finished(self, db_engine):
        _create(db_engine)
        result = cleanup_finished_events(db_engine, now=END + timedelta(days=6))
        assert result["events_deleted"] == 0
        assert len(list_events(db_engine)) == 1

    def test_custom_retention(self, db_engine):
        _create(db_engine)
        result = cleanup_finished_events(db_engine, 1, now=END + timedelta(days=2))
        assert result["events_deleted"] == 1

    def test_keeps_upcoming_and_recurring(self, db_engine):
        _create(db_engine, start_at=utc(2030, 1, 1))
        _create(db_engine, recurrence=Daily(1))
        result = cleanup_finished_events(db_engine, now=END + timedelta(days=30))
        assert result == {"events_deleted": 0, "events_skipped": 0}
        assert len(list_events(db_engine)) == 2

    def test_invalid_row_skipped(self, db_engine, db_session, caplog):
        db_session.add(Event(
            title="Broken",
            created_by="organizer",
            start_at=START,
            practice_seconds=60,
            recurrence={"type": "yearly"},
        ))
        db_session.commit()

        with caplog.at_level(logging.ERROR, logger="pathfinder.services.retention_service"):
            result = cleanup_finished_events(db_engine, now=END + timedelta(days=30))

        assert result == {"events_deleted": 0, "events_skipped": 1}
        assert "invalid definition" in caplog.text
