"""
pathfinder.engine.phases — Event Phase Clock
==============================================

Every occurrence runs through three sequential windows::

    arrival → practice → close → ended

:func:`phase_at` is the pure mapping from elapsed time to phase.
:class:`EventPhaseClock` wraps it with the occurrence-tracking rule used by
live views: once the occurrence the viewer joined is no longer the
evaluator's "current" one, the session is over and the view must exit
instead of sliding into the middle of the next occurrence.

Chat is open only while people gather and wind down (arrival, close).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from pathfinder.engine.recurrence import EventDefinition, Occurrence, next_occurrence
from pathfinder.engine.timeutils import seconds_between

logger = logging.getLogger(__name__)

__all__ = [
    "CHAT_PHASES",
    "ClockSample",
    "EventPhaseClock",
    "Phase",
    "PhaseReading",
    "chat_enabled",
    "phase_at",
]


class Phase(enum.StrEnum):
    ARRIVAL = "arrival"
    PRACTICE = "practice"
    CLOSE = "close"
    ENDED = "ended"


CHAT_PHASES: frozenset[Phase] = frozenset({Phase.ARRIVAL, Phase.CLOSE})


def chat_enabled(phase: Phase) -> bool:
    """Chat is open during arrival and close only."""
    return phase in CHAT_PHASES


@dataclass(frozen=True, slots=True)
class PhaseReading:
    """Phase at a sampled instant.

    ``elapsed_seconds`` is negative before the occurrence starts; its
    magnitude is the "starts in" countdown.  ``phase_remaining_seconds`` is
    the time until the next phase boundary (until start, when negative
    elapsed), and 0 once ended.
    """

    phase: Phase
    elapsed_seconds: int
    phase_remaining_seconds: int

    @property
    def chat_enabled(self) -> bool:
        return chat_enabled(self.phase)

    @property
    def has_started(self) -> bool:
        return self.elapsed_seconds >= 0


def phase_at(
    definition: EventDefinition, occurrence_start: datetime, as_of: datetime
) -> PhaseReading:
    """Map *as_of* onto the phases of the occurrence starting at *occurrence_start*.

    Boundaries are half-open: a zero-length phase is skipped instantly.
    """
    durations = definition.phase_durations
    elapsed = seconds_between(occurrence_start, as_of)

    if elapsed < 0:
        return PhaseReading(Phase.ARRIVAL, elapsed, -elapsed)

    arrival_end = durations.arrival
    practice_end = arrival_end + durations.practice
    close_end = practice_end + durations.close

    if elapsed < arrival_end:
        return PhaseReading(Phase.ARRIVAL, elapsed, arrival_end - elapsed)
    if elapsed < practice_end:
        return PhaseReading(Phase.PRACTICE, elapsed, practice_end - elapsed)
    if elapsed < close_end:
        return PhaseReading(Phase.CLOSE, elapsed, close_end - elapsed)
    return PhaseReading(Phase.ENDED, elapsed, 0)


# ---------------------------------------------------------------------------
# Tracking clock for live views
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ClockSample:
    """One tick of :class:`EventPhaseClock`.

    ``should_exit`` is True on exactly one sample: the first one after the
    tracked occurrence stopped being current.
    """

    reading: PhaseReading
    occurrence: Occurrence | None
    should_exit: bool


class EventPhaseClock:
    """Phase state machine bound to one occurrence of *definition*.

    The initial state comes from the occurrence current at construction;
    ``ended`` is terminal.  Sample it on a fixed interval::

        clock = EventPhaseClock(definition, now)
        sample = clock.sample(now)
        if sample.should_exit:
            leave_live_view()
    """

    def __init__(self, definition: EventDefinition, as_of: datetime) -> None:
        self.definition = definition
        start = next_occurrence(definition, as_of)
        self._occurrence = definition.occurrence_at(start) if start is not None else None
        self._finished = False
        self._exit_signaled = False

    @property
    def occurrence(self) -> Occurrence | None:
        """The occurrence this clock follows (None if none remained)."""
        return self._occurrence

    @property
    def finished(self) -> bool:
        return self._finished

    def sample(self, as_of: datetime) -> ClockSample:
        """Read the phase at *as_of* and check occurrence identity."""
        if not self._finished:
            current = next_occurrence(self.definition, as_of)
            tracked = self._occurrence.start if self._occurrence is not None else None
            if current is None or current != tracked:
                self._finished = True
                logger.info(
                    "Occurrence %s of event %s is over (current=%s)",
                    tracked.isoformat() if tracked else None,
                    self.definition.id,
                    current.isoformat() if current else None,
                )

        if self._occurrence is None:
            reading = PhaseReading(Phase.ENDED, 0, 0)
        else:
            reading = phase_at(self.definition, self._occurrence.start, as_of)

        if self._finished:
            reading = PhaseReading(Phase.ENDED, reading.elapsed_seconds, 0)

        should_exit = self._finished and not self._exit_signaled
        if should_exit:
            self._exit_signaled = True
        return ClockSample(reading, self._occurrence, should_exit)
