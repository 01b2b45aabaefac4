"""
pathfinder.engine.views — Live View Sessions
==============================================

Glue between the clocks and the periodic scheduler, owned by whatever
renders a page:

- :class:`EventViewSession` samples an :class:`EventPhaseClock` every
  second (plus an optional batch refresh every ~10 s) and fires ``on_exit``
  exactly once when the tracked occurrence is over.
- :class:`BudgetViewSession` ticks a :class:`SessionBudgetClock` every
  second, checks the daily rollover every minute, and fires
  ``on_redirect`` once per exhaustion.

Both stop every timer they started in :meth:`stop`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from pathfinder.constants import (
    BATCH_REFRESH_SECONDS,
    BUDGET_TICK_SECONDS,
    PHASE_TICK_SECONDS,
    ROLLOVER_CHECK_SECONDS,
)
from pathfinder.engine.budget import LIMIT_REACHED_PATH, SessionBudgetClock
from pathfinder.engine.phases import ClockSample, EventPhaseClock
from pathfinder.engine.recurrence import EventDefinition
from pathfinder.engine.scheduler import PeriodicTask, TickCallback
from pathfinder.engine.timeutils import utc_now

logger = logging.getLogger(__name__)


class EventViewSession:
    """A viewer's stay on one event page."""

    def __init__(
        self,
        definition: EventDefinition,
        *,
        on_sample: Callable[[ClockSample], None],
        on_exit: Callable[[], None],
        refresh_batches: TickCallback | None = None,
        now: Callable[[], datetime] = utc_now,
        phase_interval: float = PHASE_TICK_SECONDS,
        batch_interval: float = BATCH_REFRESH_SECONDS,
    ) -> None:
        self._now = now
        self._on_sample = on_sample
        self._on_exit = on_exit
        self.clock = EventPhaseClock(definition, now())

        self._tasks: list[PeriodicTask] = [
            PeriodicTask(self.sample, phase_interval, name=f"phase-{definition.id}"),
        ]
        if refresh_batches is not None:
            self._tasks.append(
                PeriodicTask(refresh_batches, batch_interval, name=f"batches-{definition.id}")
            )

    def sample(self) -> ClockSample:
        """One phase tick.  Tears the session down after the exit signal."""
        sample = self.clock.sample(self._now())
        self._on_sample(sample)
        if sample.should_exit:
            logger.info("Event %s finished; leaving the event view", self.clock.definition.id)
            self.stop()
            self._on_exit()
        return sample

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        for task in self._tasks:
            task.start(loop)

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks)


class BudgetViewSession:
    """Drives one tab's budget clock."""

    def __init__(
        self,
        clock: SessionBudgetClock,
        *,
        on_redirect: Callable[[str], None],
        tick_interval: float = BUDGET_TICK_SECONDS,
        rollover_interval: float = ROLLOVER_CHECK_SECONDS,
    ) -> None:
        self.clock = clock
        self._on_redirect = on_redirect
        self._tasks = [
            PeriodicTask(self.tick, tick_interval, name="budget-tick"),
            PeriodicTask(self.clock.check_rollover, rollover_interval, name="budget-rollover"),
        ]

    def tick(self) -> None:
        result = self.clock.tick()
        if result.should_redirect:
            self._on_redirect(LIMIT_REACHED_PATH)

    def visibility_changed(self, hidden: bool) -> None:
        self.clock.set_paused(hidden)

    def navigate(self, path: str) -> None:
        self.clock.set_context(path)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        for task in self._tasks:
            task.start(loop)

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self.clock.close()

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks)
