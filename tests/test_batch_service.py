"""
tests/test_batch_service.py — Batch Join & Reassignment Flags
===============================================================

Persisted joins on SQLite.  Small capacities keep the scenarios short:
capacity 3 with an overflow threshold of 2.
"""

from __future__ import annotations

import logging

import pytest
from conftest import STANDARD_PHASES, utc

from pathfinder.database.models import BatchParticipant, EventBatch
from pathfinder.engine.batching import Batch
from pathfinder.services import batch_service
from pathfinder.services.batch_service import (
    BatchJoinConflict,
    assignment_to_dict,
    join_event,
    list_batch_options,
    list_batches,
    run_batch_reassignment,
)
from pathfinder.services.event_service import EventNotFound, create_event, get_event

THRESHOLD = 2


@pytest.fixture
def event_id(db_engine) -> str:
    event = create_event(
        db_engine,
        title="Small group practice",
        created_by="organizer",
        start_at=utc(2025, 1, 1, 10, 0),
        phase_durations=STANDARD_PHASES,
        capacity_per_batch=3,
    )
    return event["id"]


def _join_all(engine, event_id, users) -> list[int]:
    return [
        join_event(engine, event_id, user, THRESHOLD).batch_number for user in users
    ]


class TestJoinEvent:
    def test_first_join_opens_batch_one(self, db_engine, event_id):
        assignment = join_event(db_engine, event_id, "u1", THRESHOLD)
        assert assignment.batch_number == 1
        assert assignment.opens_new_batch
        assert not assignment.already_member

    def test_fill_overflow_then_open(self, db_engine, event_id):
        numbers = _join_all(db_engine, event_id, [f"u{i}" for i in range(1, 8)])
        # Three fill batch 1, two overflow into it, the sixth opens batch 2
        assert numbers == [1, 1, 1, 1, 1, 2, 2]

        sizes = [b.size for b in list_batches(db_engine, event_id)]
        assert sizes == [5, 2]

    def test_rejoin_is_idempotent(self, db_engine, event_id):
        join_event(db_engine, event_id, "u1", THRESHOLD)
        again = join_event(db_engine, event_id, "u1", THRESHOLD)
        assert again.batch_number == 1
        assert again.already_member
        assert [b.size for b in list_batches(db_engine, event_id)] == [1]

    def test_unknown_event(self, db_engine):
        with pytest.raises(EventNotFound):
            join_event(db_engine, "missing", "u1")

    def test_rows_written(self, db_engine, db_session, event_id):
        _join_all(db_engine, event_id, ["u1", "u2"])
        assert db_session.query(EventBatch).count() == 1
        users = {row.user_id for row in db_session.query(BatchParticipant).all()}
        assert users == {"u1", "u2"}

    def test_assignment_dict(self, db_engine, event_id):
        data = assignment_to_dict(join_event(db_engine, event_id, "u1", THRESHOLD))
        assert data == {
            "batch_number": 1,
            "already_member": False,
            "opens_new_batch": True,
            "overflow": False,
        }


class TestJoinRetries:
    def test_conflict_retried(self, db_engine, event_id, monkeypatch, caplog):
        real_attempt = batch_service._attempt_join
        calls = []

        def _flaky(*args):
            calls.append(1)
            if len(calls) == 1:
                raise BatchJoinConflict("lost the race")
            return real_attempt(*args)

        monkeypatch.setattr(batch_service, "_attempt_join", _flaky)
        with caplog.at_level(logging.WARNING, logger="pathfinder.services.batch_service"):
            assignment = join_event(db_engine, event_id, "u1", THRESHOLD)

        assert assignment.batch_number == 1
        assert len(calls) == 2
        assert "retrying" in caplog.text

    def test_gives_up_after_attempts(self, db_engine, event_id, monkeypatch, caplog):
        def _always_conflict(*args):
            raise BatchJoinConflict("lost the race")

        monkeypatch.setattr(batch_service, "_attempt_join", _always_conflict)
        with caplog.at_level(logging.WARNING, logger="pathfinder.services.batch_service"):
            with pytest.raises(BatchJoinConflict):
                join_event(db_engine, event_id, "u1", THRESHOLD, attempts=2)
        assert "Giving up" in caplog.text


@pytest.fixture
def stale_view(monkeypatch):
    """Make the next join plan against *batches* instead of the table.

    Only the planning read is replaced; the capacity re-check and later
    snapshots still see the real rows, as a racing writer would leave them.
    """
    real_snapshot = batch_service._snapshot
    pending = []

    def _snapshot(session, event_id):
        if pending:
            return pending.pop()
        return real_snapshot(session, event_id)

    monkeypatch.setattr(batch_service, "_snapshot", _snapshot)
    return lambda *batches: pending.append(list(batches))


class TestAtomicJoin:
    def test_capacity_recheck_rejects_overfull_batch(
        self, db_engine, db_session, event_id, stale_view
    ):
        _join_all(db_engine, event_id, ["u1", "u2", "u3"])
        stale_view(Batch(1, frozenset({"u1", "u2"})))

        with pytest.raises(BatchJoinConflict):
            join_event(db_engine, event_id, "u4", THRESHOLD, attempts=1)

        assert db_session.query(BatchParticipant).count() == 3
        assert [b.size for b in list_batches(db_engine, event_id)] == [3]

    def test_retry_after_recheck_uses_fresh_rows(
        self, db_engine, event_id, stale_view, caplog
    ):
        _join_all(db_engine, event_id, ["u1", "u2", "u3"])
        stale_view(Batch(1, frozenset({"u1", "u2"})))

        with caplog.at_level(logging.WARNING, logger="pathfinder.services.batch_service"):
            assignment = join_event(db_engine, event_id, "u4", THRESHOLD)

        assert assignment.batch_number == 1
        assert assignment.overflow
        assert "retrying" in caplog.text
        assert [b.size for b in list_batches(db_engine, event_id)] == [4]

    def test_duplicate_insert_resolves_to_existing_batch(
        self, db_engine, db_session, event_id, stale_view
    ):
        join_event(db_engine, event_id, "u9", THRESHOLD)
        stale_view(Batch(1))  # Plan misses the existing membership

        assignment = join_event(db_engine, event_id, "u9", THRESHOLD)

        assert assignment.batch_number == 1
        assert assignment.already_member
        rows = db_session.query(BatchParticipant).filter_by(user_id="u9").all()
        assert len(rows) == 1


class TestSmallBatchFlags:
    def test_flag_set_and_cleared_by_joins(self, db_engine, event_id):
        _join_all(db_engine, event_id, [f"u{i}" for i in range(1, 7)])
        event = get_event(db_engine, event_id)
        assert event["has_small_batches_with_full_others"] is True
        assert event["small_batch_numbers"] == [2]

        join_event(db_engine, event_id, "u7", THRESHOLD)
        event = get_event(db_engine, event_id)
        assert event["has_small_batches_with_full_others"] is False
        assert event["small_batch_numbers"] == []

    def test_reassignment_sweep(self, db_engine, db_session, event_id):
        # Rows written behind the service's back leave stale flags
        db_session.add_all([
            EventBatch(event_id=event_id, batch_number=1),
            EventBatch(event_id=event_id, batch_number=2),
            *[
                BatchParticipant(event_id=event_id, batch_number=1, user_id=f"a{i}")
                for i in range(3)
            ],
            BatchParticipant(event_id=event_id, batch_number=2, user_id="b0"),
        ])
        db_session.commit()

        first = run_batch_reassignment(db_engine, overflow_threshold=THRESHOLD)
        second = run_batch_reassignment(db_engine, event_id, THRESHOLD)

        assert first == {"events_checked": 1, "events_changed": 1}
        assert second == {"events_checked": 1, "events_changed": 0}
        assert get_event(db_engine, event_id)["small_batch_numbers"] == [2]


class TestBatchOptions:
    def test_fresh_event(self, db_engine, event_id):
        options = list_batch_options(db_engine, event_id, THRESHOLD)
        assert [(o.batch_number, o.size, o.is_new) for o in options] == [(1, 0, True)]

    def test_full_batch_still_joinable_for_overflow(self, db_engine, event_id):
        _join_all(db_engine, event_id, ["u1", "u2", "u3"])
        options = list_batch_options(db_engine, event_id, THRESHOLD)
        assert [(o.batch_number, o.size, o.joinable) for o in options] == [(1, 3, True)]
