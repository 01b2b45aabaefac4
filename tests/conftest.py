"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively; render it as TEXT and let
# SQLAlchemy's JSON serialization do the rest.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from pathfinder.config import PathfinderConfig
from pathfinder.database.models import Base
from pathfinder.engine.recurrence import EventDefinition, PhaseDurations

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def utc(*args) -> datetime:
    """Shorthand for an aware UTC datetime."""
    return datetime(*args, tzinfo=UTC)


class FakeClock:
    """Mutable "now" for clocks that take a ``now`` callable."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


# Standard phases: 5 min arrival, 20 min practice, 5 min close
STANDARD_PHASES = PhaseDurations(arrival=300, practice=1200, close=300)


def make_definition(**overrides) -> EventDefinition:
    """A one-off event at 2025-01-01 10:00 UTC with standard phases."""
    fields = {
        "id": "evt-1",
        "start_instant": utc(2025, 1, 1, 10, 0),
        "phase_durations": STANDARD_PHASES,
        "created_by": "organizer",
    }
    fields.update(overrides)
    return EventDefinition(**fields)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Pathfinder tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` and the API's threadpool).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def test_config() -> PathfinderConfig:
    return PathfinderConfig(community_name="Test Community")


@pytest.fixture
def client(db_engine, test_config):
    """FastAPI TestClient wired to the in-memory database."""
    from fastapi.testclient import TestClient

    from pathfinder.api.deps import get_config, get_engine
    from pathfinder.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: test_config
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
