"""
tests/test_kv_store.py — SQL Key-Value Store
==============================================

Table-backed store on SQLite (no NOTIFY) plus the NOTIFY payload routing
that the PostgreSQL listener thread feeds.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

import pytest
from conftest import FakeClock, utc

from pathfinder.engine.budget import SessionBudgetClock
from pathfinder.services.kv_store import SqlKeyValueStore, validate_key


@pytest.fixture
def store(db_engine) -> SqlKeyValueStore:
    return SqlKeyValueStore(db_engine)


class TestValidateKey:
    @pytest.mark.parametrize("key", ["tpf_session_2025-01-01", "a.b:c", "x" * 200])
    def test_accepts(self, key):
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", ["", "has space", "semi;colon", "x" * 201])
    def test_rejects(self, key):
        with pytest.raises(ValueError):
            validate_key(key)


class TestSqlStore:
    def test_get_set_delete(self, store):
        assert store.get("k") is None
        store.set("k", "1")
        store.set("k", "2")
        assert store.get("k") == "2"
        store.delete("k")
        assert store.get("k") is None

    def test_invalid_key_not_written(self, store):
        with pytest.raises(ValueError):
            store.set("bad key", "1")
        assert store.keys() == []

    def test_keys_by_prefix(self, store):
        store.set("tpf_session_2025-01-02", "1")
        store.set("tpf_session_2025-01-01", "1")
        store.set("tpf_sessionXother", "1")
        store.set("theme", "dark")
        assert store.keys("tpf_session_") == [
            "tpf_session_2025-01-01",
            "tpf_session_2025-01-02",
        ]

    def test_underscore_in_prefix_is_literal(self, store):
        store.set("a_b", "1")
        store.set("axb", "1")
        assert store.keys("a_") == ["a_b"]

    def test_local_subscribers_notified(self, store):
        seen = []
        store.subscribe("tpf_", lambda k, v: seen.append((k, v)))
        store.set("tpf_x", "5")
        store.set("tpf_x", "5")  # Unchanged
        store.delete("tpf_x")
        store.delete("tpf_x")  # Already gone
        assert seen == [("tpf_x", "5"), ("tpf_x", None)]

    def test_no_notify_on_sqlite(self, store):
        assert not store._notifies

    def test_shared_between_instances(self, db_engine):
        SqlKeyValueStore(db_engine).set("k", "v")
        assert SqlKeyValueStore(db_engine).get("k") == "v"


class TestHandleNotify:
    def test_foreign_change_published(self, store):
        callback = MagicMock()
        store.subscribe("tpf_", callback)
        store.handle_notify(json.dumps({"key": "tpf_a", "value": "12", "origin": "other"}))
        callback.assert_called_once_with("tpf_a", "12")

    def test_foreign_delete_published(self, store):
        callback = MagicMock()
        store.subscribe("", callback)
        store.handle_notify(json.dumps({"key": "tpf_a", "value": None, "origin": "other"}))
        callback.assert_called_once_with("tpf_a", None)

    def test_own_echo_ignored(self, store):
        callback = MagicMock()
        store.subscribe("", callback)
        store.handle_notify(json.dumps({"key": "k", "value": "1", "origin": store.origin}))
        callback.assert_not_called()

    @pytest.mark.parametrize("payload", ["not json", json.dumps([1, 2]), json.dumps({"v": 1})])
    def test_malformed_payload_logged(self, store, payload, caplog):
        callback = MagicMock()
        store.subscribe("", callback)
        with caplog.at_level(logging.WARNING, logger="pathfinder.services.kv_store"):
            store.handle_notify(payload)
        callback.assert_not_called()
        assert "kv payload" in caplog.text

    def test_listener_not_started(self, store):
        assert not store.listener_healthy
        assert not store.listener_failed
        store.stop_listener()  # No thread; harmless


class TestBudgetOverSqlStore:
    def test_budget_persisted_in_table(self, db_engine):
        clock = FakeClock(utc(2025, 1, 1, 12, 0))
        budget = SessionBudgetClock(SqlKeyValueStore(db_engine), now=clock, context="/home")
        clock.advance(60)
        budget.tick()

        other_tab = SessionBudgetClock(SqlKeyValueStore(db_engine), now=clock)
        assert other_tab.remaining_seconds == 1200
