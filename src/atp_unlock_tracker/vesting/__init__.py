"""Vesting layer - Lock models and unlock-schedule math."""

from atp_unlock_tracker.vesting.models import (
    ATPRecord,
    ATPStats,
    ATPType,
    Lock,
    MilestoneStatus,
    TokenHolder,
    TypeBreakdown,
    UnlockPoint,
    UnlockSchedule,
    UnlockStats,
)
from atp_unlock_tracker.vesting.stats import compute_atp_stats
from atp_unlock_tracker.vesting.unlock import (
    compute_aggregate_unlock_stats,
    compute_unlock_schedule,
    compute_unlock_series,
)

__all__ = [
    "ATPRecord",
    "ATPStats",
    "ATPType",
    "Lock",
    "MilestoneStatus",
    "TokenHolder",
    "TypeBreakdown",
    "UnlockPoint",
    "UnlockSchedule",
    "UnlockStats",
    "compute_aggregate_unlock_stats",
    "compute_atp_stats",
    "compute_unlock_schedule",
    "compute_unlock_series",
]
