"""
pathfinder.engine.batching — Batch Assignment with Overflow Rule
==================================================================

Pure decision logic.  Given a snapshot of an occurrence's batches, decide
where a joining participant lands; the caller persists the membership
change atomically (see :mod:`pathfinder.services.batch_service`).

Rules, in order:

1. Already a member somewhere → that batch (re-join is a no-op).
2. First batch (ascending number) with free space.
3. Every batch is full: if splitting the overflow of the newest batch plus
   the joiner into a new batch would strand ``<= overflow_threshold``
   people, overflow into the newest batch instead.
4. Otherwise open batch ``max + 1`` (``1`` for a fresh event).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from pathfinder.constants import BATCH_OVERFLOW_THRESHOLD

__all__ = [
    "Batch",
    "BatchAssignment",
    "BatchOption",
    "BatchPolicy",
    "batch_options",
    "choose_batch_for_join",
    "find_participant_batch",
    "is_small_batch",
    "plan_join",
    "small_batches_with_full_others",
]


@dataclass(frozen=True, slots=True)
class Batch:
    """One capacity-bounded sub-group of an occurrence."""

    batch_number: int
    participants: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.batch_number < 1:
            raise ValueError(f"batch_number must be >= 1, got {self.batch_number}")
        object.__setattr__(self, "participants", frozenset(self.participants))

    @property
    def size(self) -> int:
        return len(self.participants)


@dataclass(frozen=True, slots=True)
class BatchPolicy:
    capacity: int
    overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if self.overflow_threshold < 0:
            raise ValueError("overflow_threshold must not be negative")


@dataclass(frozen=True, slots=True)
class BatchAssignment:
    """Outcome of :func:`plan_join`."""

    batch_number: int
    already_member: bool = False
    opens_new_batch: bool = False
    overflow: bool = False


def _ordered(batches: Iterable[Batch]) -> list[Batch]:
    return sorted(batches, key=lambda b: b.batch_number)


def find_participant_batch(batches: Iterable[Batch], user_id: str) -> int | None:
    """Number of the batch *user_id* already belongs to, if any."""
    for batch in _ordered(batches):
        if user_id in batch.participants:
            return batch.batch_number
    return None


def plan_join(
    batches: Iterable[Batch], policy: BatchPolicy, user_id: str | None = None
) -> BatchAssignment:
    """Decide the batch for a join.  Stateless; re-run it on fresh data."""
    ordered = _ordered(batches)

    if user_id is not None:
        existing = find_participant_batch(ordered, user_id)
        if existing is not None:
            return BatchAssignment(existing, already_member=True)

    if not ordered:
        return BatchAssignment(1, opens_new_batch=True)

    for batch in ordered:
        if batch.size < policy.capacity:
            return BatchAssignment(batch.batch_number)

    # All full.  The newest batch may already hold overflow from earlier joins.
    newest = ordered[-1]
    stranded = (newest.size - policy.capacity) + 1
    if stranded <= policy.overflow_threshold:
        return BatchAssignment(newest.batch_number, overflow=True)

    return BatchAssignment(newest.batch_number + 1, opens_new_batch=True)


def choose_batch_for_join(
    batches: Iterable[Batch],
    capacity_per_batch: int,
    overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD,
    *,
    user_id: str | None = None,
) -> int:
    """Batch number a joiner should be written to."""
    policy = BatchPolicy(capacity_per_batch, overflow_threshold)
    return plan_join(batches, policy, user_id).batch_number


# ---------------------------------------------------------------------------
# Small-batch detection (shared with the background reassignment job)
# ---------------------------------------------------------------------------
def is_small_batch(batch: Batch, overflow_threshold: int) -> bool:
    """Non-empty and below the overflow threshold (1..5 by default)."""
    return 0 < batch.size < overflow_threshold


def small_batches_with_full_others(
    batches: Iterable[Batch], policy: BatchPolicy
) -> list[int]:
    """Numbers of small batches, when every other batch is at capacity.

    Empty list when there are no small batches, no other batches, or some
    other batch still has space.
    """
    ordered = _ordered(batches)
    small = [b for b in ordered if is_small_batch(b, policy.overflow_threshold)]
    if not small:
        return []
    small_numbers = {b.batch_number for b in small}
    others = [b for b in ordered if b.batch_number not in small_numbers]
    if not others or any(b.size < policy.capacity for b in others):
        return []
    return [b.batch_number for b in small]


# ---------------------------------------------------------------------------
# Join listing
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BatchOption:
    batch_number: int
    size: int
    joinable: bool
    is_new: bool = False


def batch_options(batches: Iterable[Batch], policy: BatchPolicy) -> list[BatchOption]:
    """What a join screen offers: existing batches plus a possible new one.

    A full batch is joinable only when it is the overflow target that
    :func:`plan_join` would pick, so the listing never disagrees with it.
    """
    ordered = _ordered(batches)
    plan = plan_join(ordered, policy)
    options = [
        BatchOption(
            batch_number=b.batch_number,
            size=b.size,
            joinable=b.size < policy.capacity or b.batch_number == plan.batch_number,
        )
        for b in ordered
    ]
    if plan.opens_new_batch:
        options.append(BatchOption(plan.batch_number, 0, joinable=True, is_new=True))
    return options
