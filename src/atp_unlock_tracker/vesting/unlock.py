"""Unlock-schedule math for linear vesting locks with a cliff.

The arithmetic mirrors the on-chain vesting contract exactly: elapsed time
is measured from the lock start in whole seconds and the unlocked amount is
``amount * elapsed // duration`` in integer arithmetic. Floating point is
never used on token amounts.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence

from atp_unlock_tracker.vesting.models import Lock, UnlockPoint, UnlockSchedule, UnlockStats

MS_PER_SECOND = 1000


def now_ms() -> int:
    """Current wall-clock time as a millisecond epoch."""
    return time.time_ns() // 1_000_000


def compute_unlock_schedule(lock: Lock, evaluation_time: int | None = None) -> UnlockSchedule:
    """Compute how much of ``lock`` is unlocked at ``evaluation_time``.

    Args:
        lock: The vesting lock (all times in milliseconds).
        evaluation_time: Millisecond epoch to evaluate at; defaults to now.

    Returns:
        The unlock schedule at that instant.
    """
    at = now_ms() if evaluation_time is None else int(evaluation_time)
    cliff_end = lock.cliff_end
    full_unlock = lock.full_unlock

    if at < cliff_end:
        return UnlockSchedule(cliff_end, full_unlock, 0, False)
    if lock.lock_duration == 0 and at == lock.start_time:
        # Zero-length lock at its own start: no time has elapsed yet.
        return UnlockSchedule(cliff_end, full_unlock, 0, False)
    if at >= full_unlock:
        return UnlockSchedule(cliff_end, full_unlock, lock.amount, True)

    # Linear from start_time, not from the cliff.
    elapsed_seconds = (at - lock.start_time) // MS_PER_SECOND
    total_seconds = lock.lock_duration // MS_PER_SECOND
    if total_seconds == 0:
        unlocked = 0
    else:
        unlocked = min(lock.amount * elapsed_seconds // total_seconds, lock.amount)
    return UnlockSchedule(cliff_end, full_unlock, unlocked, False)


def compute_unlock_series(
    locks: Sequence[Lock],
    range_start: int,
    range_end: int,
    point_count: int = 100,
) -> list[UnlockPoint]:
    """Sample the aggregate unlocked amount over ``[range_start, range_end]``.

    Produces ``point_count + 1`` evenly spaced samples including both ends.
    Sample instants are truncated to whole milliseconds.
    """
    if point_count < 1:
        raise ValueError(f"point_count must be >= 1, got {point_count}")
    if range_end < range_start:
        raise ValueError("range_end must not precede range_start")

    span = range_end - range_start
    points: list[UnlockPoint] = []
    for i in range(point_count + 1):
        timestamp = range_start + (span * i) // point_count
        unlocked = sum(compute_unlock_schedule(lock, timestamp).current_unlocked for lock in locks)
        points.append(UnlockPoint(timestamp=timestamp, unlocked=unlocked))
    return points


def format_basis_points(numerator: int, denominator: int) -> str:
    """Format ``numerator / denominator`` as a percentage with two decimals.

    The ratio is rounded half-up to whole basis points in integer
    arithmetic; only the final rendering produces a string.
    """
    if denominator <= 0:
        return "0.00"
    bps = (2 * numerator * 10_000 + denominator) // (2 * denominator)
    return f"{bps // 100}.{bps % 100:02d}"


def compute_aggregate_unlock_stats(
    locks: Iterable[Lock],
    evaluation_time: int | None = None,
) -> UnlockStats:
    """Tally unlock progress across ``locks`` at one instant."""
    at = now_ms() if evaluation_time is None else int(evaluation_time)

    total_locked = 0
    total_unlocked = 0
    fully_unlocked = 0
    in_cliff = 0
    unlocking = 0

    for lock in locks:
        schedule = compute_unlock_schedule(lock, at)
        total_locked += lock.amount
        total_unlocked += schedule.current_unlocked
        if schedule.fully_unlocked:
            fully_unlocked += 1
        elif at < schedule.cliff_end:
            in_cliff += 1
        else:
            unlocking += 1

    return UnlockStats(
        total_locked=total_locked,
        total_unlocked=total_unlocked,
        total_fully_unlocked=fully_unlocked,
        total_in_cliff=in_cliff,
        total_unlocking=unlocking,
        unlock_percentage=format_basis_points(total_unlocked, total_locked),
    )
