"""
pathfinder.engine.budget — Daily Session Budget Clock
=======================================================

A per-device countdown of general browsing time (21 minutes by default)
that resets at a fixed local time-of-day (03:20 by default) rather than
midnight.

Behaviour:

- Counts real wall-clock time between ticks, so timer drift or a sleeping
  device is charged correctly (and clamped, never negative).
- Pauses while the page is hidden.  Resuming re-reads the persisted value
  first, because another tab may have spent time meanwhile.
- Event pages and the limit-reached page never tick and never redirect.
- Hitting zero signals a redirect once per transition.
- One persisted integer per session-day key; older keys are deleted.

All state lives behind an injected :class:`KeyValueStore`.  Every tab
(clock instance) on the device shares that store and subscribes to it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING

from pathfinder.constants import (
    DAILY_TIME_LIMIT_MINUTES,
    SESSION_KEY_PREFIX,
    TIMER_RESET_HOUR,
    TIMER_RESET_MINUTE,
)
from pathfinder.engine.storage import KeyValueStore
from pathfinder.engine.timeutils import session_day_key, utc_now

if TYPE_CHECKING:
    from pathfinder.config import PathfinderConfig

logger = logging.getLogger(__name__)

__all__ = [
    "BudgetTick",
    "EVENT_PATH_PREFIX",
    "LIMIT_REACHED_PATH",
    "PUBLIC_PATHS",
    "SessionBudgetClock",
    "is_exempt_context",
    "redirect_allowed",
]

# ---------------------------------------------------------------------------
# Page contexts
# ---------------------------------------------------------------------------
EVENT_PATH_PREFIX = "/events/"
EVENT_CREATE_PATH = "/events/create"
LIMIT_REACHED_PATH = "/limit-reached"
PUBLIC_PATHS: frozenset[str] = frozenset({"/", "/login", "/signup", "/onboarding"})


def is_exempt_context(path: str) -> bool:
    """Event detail pages and the limit page neither tick nor redirect."""
    if path == LIMIT_REACHED_PATH:
        return True
    return path.startswith(EVENT_PATH_PREFIX) and path != EVENT_CREATE_PATH


def redirect_allowed(path: str) -> bool:
    """Whether an exhausted budget may push the viewer away from *path*."""
    return not is_exempt_context(path) and path not in PUBLIC_PATHS


@dataclass(frozen=True, slots=True)
class BudgetTick:
    remaining_seconds: int
    should_redirect: bool = False
    rolled_over: bool = False


class SessionBudgetClock:
    """One tab's view of the device's daily budget.

    Thread-safe: store notifications may arrive on a listener thread, or
    on another clock's thread in the middle of its write.  A notification
    never waits for this clock's lock; if the lock is busy the clock is
    marked stale and re-reads the store on its next operation.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        daily_limit_seconds: int = DAILY_TIME_LIMIT_MINUTES * 60,
        reset_hour: int = TIMER_RESET_HOUR,
        reset_minute: int = TIMER_RESET_MINUTE,
        tz: tzinfo = UTC,
        now: Callable[[], datetime] = utc_now,
        context: str = "/",
    ) -> None:
        if daily_limit_seconds <= 0:
            raise ValueError("daily_limit_seconds must be positive")
        self._store = store
        self._limit = daily_limit_seconds
        self._reset_hour = reset_hour
        self._reset_minute = reset_minute
        self._tz = tz
        self._now = now
        self._lock = threading.RLock()

        self._context = context
        self._paused = False
        self._exhaust_signaled = False
        self._carry = 0.0  # Sub-second remainder between ticks
        self._stale = False  # A change notification was skipped

        current = self._now()
        self._key = self._key_for(current)
        self._remaining = self._load(self._key)
        self._last_tick = current
        self._purge_stale_keys()
        self._persist()

        self._unsubscribe = store.subscribe(SESSION_KEY_PREFIX, self._on_store_change)

    @classmethod
    def from_config(
        cls, store: KeyValueStore, config: PathfinderConfig, **kwargs
    ) -> SessionBudgetClock:
        """Build a clock with the limit, reset time and zone from *config*."""
        return cls(
            store,
            daily_limit_seconds=config.daily_limit_seconds,
            reset_hour=config.reset_hour,
            reset_minute=config.reset_minute,
            tz=config.tz,
            **kwargs,
        )

    # -------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------
    @property
    def remaining_seconds(self) -> int:
        with self._lock:
            self._sync_if_stale()
            return self._remaining

    @property
    def minutes(self) -> int:
        return self.remaining_seconds // 60

    @property
    def seconds(self) -> int:
        return self.remaining_seconds % 60

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_expired(self) -> bool:
        return self.remaining_seconds <= 0

    @property
    def session_key(self) -> str:
        return self._key

    @property
    def daily_limit_seconds(self) -> int:
        return self._limit

    @property
    def context(self) -> str:
        return self._context

    # -------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------
    def _key_for(self, instant: datetime) -> str:
        return session_day_key(instant, self._tz, self._reset_hour, self._reset_minute)

    def _clamp(self, value: int) -> int:
        return max(0, min(self._limit, value))

    def _parse(self, key: str, raw: str | None) -> int | None:
        if raw is None:
            return None
        try:
            return self._clamp(int(raw))
        except ValueError:
            logger.warning("Ignoring unparsable budget value %r under %s", raw, key)
            return None

    def _load(self, key: str) -> int:
        stored = self._parse(key, self._store.get(key))
        return self._limit if stored is None else stored

    def _persist(self) -> None:
        self._store.set(self._key, str(self._remaining))

    def _purge_stale_keys(self) -> None:
        for key in self._store.keys(SESSION_KEY_PREFIX):
            if key != self._key:
                self._store.delete(key)
                logger.debug("Removed stale session key %s", key)

    def _set_remaining(self, value: int) -> None:
        self._remaining = self._clamp(value)
        if self._remaining > 0:
            self._exhaust_signaled = False

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    def tick(self) -> BudgetTick:
        """Charge the wall-clock time since the previous tick."""
        with self._lock:
            self._sync_if_stale()
            current = self._now()
            rolled_over = self._check_rollover(current)

            elapsed = (current - self._last_tick).total_seconds()
            self._last_tick = current
            if rolled_over or elapsed <= 0:
                elapsed = 0.0

            if (
                not self._paused
                and self._remaining > 0
                and not is_exempt_context(self._context)
                and elapsed > 0
            ):
                total = elapsed + self._carry
                spent = int(total)
                self._carry = total - spent
                if spent:
                    self._set_remaining(self._remaining - spent)
                    self._persist()
            else:
                self._carry = 0.0

            return BudgetTick(
                remaining_seconds=self._remaining,
                should_redirect=self._consume_redirect(),
                rolled_over=rolled_over,
            )

    def set_paused(self, paused: bool) -> None:
        """Visibility change.  Resuming reconciles with the persisted value."""
        with self._lock:
            if paused == self._paused:
                return
            self._sync_if_stale()
            current = self._now()
            if not paused:
                self._check_rollover(current)
                self._reconcile()
            self._paused = paused
            self._last_tick = current
            self._carry = 0.0

    def set_context(self, path: str) -> None:
        """Navigation.  Entering a redirectable page re-arms the redirect."""
        with self._lock:
            if path == self._context:
                return
            self._context = path
            if redirect_allowed(path):
                self._exhaust_signaled = False

    def reset(self) -> None:
        """Restore the full budget for the current session day and persist it."""
        with self._lock:
            self._key = self._key_for(self._now())
            self._set_remaining(self._limit)
            self._carry = 0.0
            self._stale = False
            self._persist()
            logger.info("Session budget reset for %s", self._key)

    def check_rollover(self) -> bool:
        """Periodic reset-time check.  True if a new session day began."""
        with self._lock:
            self._sync_if_stale()
            return self._check_rollover(self._now())

    def reconcile(self) -> None:
        """Adopt the persisted value for the current key."""
        with self._lock:
            self._reconcile()

    def close(self) -> None:
        """Stop listening for changes from other tabs."""
        self._unsubscribe()

    # -------------------------------------------------------------------
    # Internals (call with the lock held)
    # -------------------------------------------------------------------
    def _check_rollover(self, current: datetime) -> bool:
        key = self._key_for(current)
        if key == self._key:
            return False
        previous = self._key
        self._key = key
        self._set_remaining(self._load(key))
        self._carry = 0.0
        self._last_tick = current
        self._purge_stale_keys()
        self._persist()
        logger.info("Session day rolled over: %s → %s", previous, key)
        return True

    def _reconcile(self) -> None:
        self._stale = False
        stored = self._parse(self._key, self._store.get(self._key))
        if stored is None:
            self._persist()
            return
        if stored != self._remaining:
            logger.debug(
                "Reconciled budget %s: %d → %d", self._key, self._remaining, stored,
            )
            self._set_remaining(stored)

    def _sync_if_stale(self) -> None:
        if self._stale:
            self._reconcile()

    def _consume_redirect(self) -> bool:
        if self._remaining > 0 or self._exhaust_signaled:
            return False
        if not redirect_allowed(self._context):
            return False
        self._exhaust_signaled = True
        logger.info("Session budget exhausted on %s; redirecting", self._context)
        return True

    def _on_store_change(self, key: str, value: str | None) -> None:
        # Runs on the writer's thread, possibly under another clock's lock
        if not self._lock.acquire(blocking=False):
            self._stale = True
            return
        try:
            if key != self._key or value is None:
                return
            stored = self._parse(key, value)
            if stored is not None and stored != self._remaining:
                self._set_remaining(stored)
        finally:
            self._lock.release()
