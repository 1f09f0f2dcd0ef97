"""Aggregate statistics across discovered ATP records."""

from __future__ import annotations

from collections.abc import Iterable

from atp_unlock_tracker.vesting.models import ATPRecord, ATPStats, ATPType, TypeBreakdown


def compute_atp_stats(records: Iterable[ATPRecord], *, total_holders: int = 0) -> ATPStats:
    """Sum allocation, claimed, claimable and balance overall and per type.

    Every ATPType appears in the breakdown, zero-filled when absent.
    """
    totals = {atp_type: [0, 0, 0, 0] for atp_type in ATPType}
    total_atps = 0
    total_balance = 0

    for record in records:
        total_atps += 1
        total_balance += record.balance
        bucket = totals[record.atp_type]
        bucket[0] += 1
        bucket[1] += record.allocation
        bucket[2] += record.claimed
        bucket[3] += record.claimable

    by_type = {
        atp_type: TypeBreakdown(
            count=count,
            total_allocation=allocation,
            total_claimed=claimed,
            total_claimable=claimable,
        )
        for atp_type, (count, allocation, claimed, claimable) in totals.items()
    }

    return ATPStats(
        total_atps=total_atps,
        total_allocation=sum(b.total_allocation for b in by_type.values()),
        total_claimed=sum(b.total_claimed for b in by_type.values()),
        total_claimable=sum(b.total_claimable for b in by_type.values()),
        total_balance=total_balance,
        by_type=by_type,
        total_holders=total_holders,
    )
