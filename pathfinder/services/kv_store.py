"""
pathfinder.services.kv_store — SQL Key-Value Store with PG LISTEN/NOTIFY
==========================================================================

A :class:`~pathfinder.engine.storage.KeyValueStore` backed by the
``kv_store`` table, so every process serving a device's tabs reads and
writes the same session budget.

Change delivery:

- Subscribers in this process are notified right after the write commits.
- Every write on PostgreSQL also emits ``pg_notify('kv_changed', …)`` inside
  the writing transaction, so it fires atomically on commit.  A background
  LISTEN thread in each other process forwards those to its subscribers.
  Payloads carry the writer's ``origin`` so a store ignores its own echoes.
"""

from __future__ import annotations

import json
import logging
import random
import re
import select as _select
import threading
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from pathfinder.database.engine import get_session
from pathfinder.database.models import KeyValue
from pathfinder.engine.storage import ChangeCallback, SubscriberRegistry, Unsubscribe

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel name used for key-value change delivery
NOTIFY_CHANNEL = "kv_changed"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,200}$")


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid store key: {key!r}")
    return key


def notify_before_commit(session: Session, payload: dict) -> None:
    """Queue a NOTIFY in the current transaction (delivered on commit)."""
    session.execute(
        text("SELECT pg_notify(:channel, :payload)"),
        {"channel": NOTIFY_CHANNEL, "payload": json.dumps(payload)},
    )


class SqlKeyValueStore:
    """Thread-safe store over ``kv_store``.

    Usage::

        store = SqlKeyValueStore(engine)
        store.start_listener()
        clock = SessionBudgetClock(store)
        ...
        store.stop_listener()
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._subscribers = SubscriberRegistry()
        self.origin = uuid.uuid4().hex

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    @property
    def _notifies(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    # -------------------------------------------------------------------
    # KeyValueStore protocol
    # -------------------------------------------------------------------
    def get(self, key: str) -> str | None:
        with get_session(self._engine) as session:
            row = session.get(KeyValue, key)
            return None if row is None else row.value

    def set(self, key: str, value: str) -> None:
        validate_key(key)
        with get_session(self._engine) as session:
            row = session.get(KeyValue, key)
            if row is not None and row.value == value:
                return
            if row is None:
                session.add(KeyValue(key=key, value=value))
            else:
                row.value = value
            if self._notifies:
                notify_before_commit(
                    session, {"key": key, "value": value, "origin": self.origin},
                )
        self._subscribers.publish(key, value)

    def delete(self, key: str) -> None:
        with get_session(self._engine) as session:
            row = session.get(KeyValue, key)
            if row is None:
                return
            session.delete(row)
            if self._notifies:
                notify_before_commit(
                    session, {"key": key, "value": None, "origin": self.origin},
                )
        self._subscribers.publish(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with get_session(self._engine) as session:
            stmt = select(KeyValue.key).order_by(KeyValue.key)
            if prefix:
                stmt = stmt.where(KeyValue.key.startswith(prefix, autoescape=True))
            return list(session.scalars(stmt).all())

    def subscribe(self, prefix: str, callback: ChangeCallback) -> Unsubscribe:
        return self._subscribers.add(prefix, callback)

    # -------------------------------------------------------------------
    # NOTIFY handling
    # -------------------------------------------------------------------
    def handle_notify(self, raw_payload: str) -> None:
        """Forward a change written by another process to local subscribers."""
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid kv payload (not JSON): %s", raw_payload)
            return

        key = data.get("key") if isinstance(data, dict) else None
        if not isinstance(key, str):
            logger.warning("kv payload missing 'key': %s", raw_payload)
            return
        if data.get("origin") == self.origin:
            return

        value = data.get("value")
        self._subscribers.publish(key, None if value is None else str(value))

    @property
    def listener_healthy(self) -> bool:
        """True while the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """True once the listener exhausted its reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("kv LISTEN thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on :data:`NOTIFY_CHANNEL`.

        Raw psycopg2 connection + ``select()``, reconnecting with
        exponential backoff and jitter; gives up after 10 failed attempts.
        """
        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) masks the password; psycopg2 needs it.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", NOTIFY_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            payload = notify.payload or ""
                            logger.debug("NOTIFY received: %s", payload)
                            try:
                                self.handle_notify(payload)
                            except Exception:
                                logger.exception("Error handling kv NOTIFY: %s", payload)

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Cross-process budget sync disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="kv-notify-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("kv LISTEN thread started")
