"""Data models for vesting contracts and their unlock schedules.

Token amounts are held as Python ``int`` (arbitrary precision) and
serialized as decimal strings; timestamps and durations are integer
milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ATPType(str, Enum):
    """Vesting behaviour of an ATP contract."""

    LINEAR = "Linear"
    MILESTONE = "Milestone"
    NON_CLAIM = "NonClaim"


class MilestoneStatus(str, Enum):
    """Status of the milestone gating a Milestone-type ATP."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class Lock:
    """A linear vesting schedule with a cliff.

    Attributes:
        start_time: Instant vesting begins (ms epoch).
        cliff_duration: Time from ``start_time`` until anything unlocks (ms).
        lock_duration: Time from ``start_time`` until everything unlocks (ms).
        amount: Total base units governed by this schedule.
    """

    start_time: int
    cliff_duration: int
    lock_duration: int
    amount: int

    def __post_init__(self) -> None:
        if self.cliff_duration < 0:
            raise ValueError(f"cliff_duration must be >= 0, got {self.cliff_duration}")
        if self.lock_duration < self.cliff_duration:
            raise ValueError(
                f"lock_duration ({self.lock_duration}) must be >= cliff_duration "
                f"({self.cliff_duration})"
            )
        if self.amount < 0:
            raise ValueError(f"amount must be >= 0, got {self.amount}")

    @property
    def cliff_end(self) -> int:
        return self.start_time + self.cliff_duration

    @property
    def full_unlock(self) -> int:
        return self.start_time + self.lock_duration

    def with_amount(self, amount: int) -> Lock:
        """Return a copy of this lock governing ``amount`` instead."""
        return Lock(
            start_time=self.start_time,
            cliff_duration=self.cliff_duration,
            lock_duration=self.lock_duration,
            amount=amount,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Lock:
        """Create a Lock from its serialized form."""
        return cls(
            start_time=int(data["startTime"]),
            cliff_duration=int(data["cliffDuration"]),
            lock_duration=int(data["lockDuration"]),
            amount=int(data["amount"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "startTime": self.start_time,
            "cliffDuration": self.cliff_duration,
            "lockDuration": self.lock_duration,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class UnlockSchedule:
    """Unlock state of a lock at one evaluation instant."""

    cliff_end: int
    full_unlock: int
    current_unlocked: int
    fully_unlocked: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "cliffEnd": self.cliff_end,
            "fullUnlock": self.full_unlock,
            "currentUnlocked": str(self.current_unlocked),
            "fullyUnlocked": self.fully_unlocked,
        }


@dataclass(frozen=True)
class UnlockPoint:
    """Aggregate unlocked amount across many locks at one instant."""

    timestamp: int
    unlocked: int

    @property
    def cumulative(self) -> int:
        # Aggregate unlock is already cumulative over time.
        return self.unlocked

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "unlocked": str(self.unlocked),
            "cumulative": str(self.cumulative),
        }


@dataclass(frozen=True)
class UnlockStats:
    """Unlock progress tallied across a set of locks."""

    total_locked: int
    total_unlocked: int
    total_fully_unlocked: int
    total_in_cliff: int
    total_unlocking: int
    unlock_percentage: str

    def to_dict(self) -> dict[str, object]:
        return {
            "totalLocked": str(self.total_locked),
            "totalUnlocked": str(self.total_unlocked),
            "totalFullyUnlocked": self.total_fully_unlocked,
            "totalInCliff": self.total_in_cliff,
            "totalUnlocking": self.total_unlocking,
            "unlockPercentage": self.unlock_percentage,
        }


@dataclass(frozen=True)
class ATPRecord:
    """Snapshot of one ATP contract's on-chain state.

    Records are produced once per discovery cycle and never mutated; the
    next cycle produces new records.

    Attributes:
        address: ATP contract address (lower-cased).
        atp_type: Vesting behaviour classification.
        beneficiary: Beneficiary address (lower-cased).
        allocation: Total tokens allocated to the ATP.
        claimed: Tokens already claimed.
        claimable: Tokens claimable now.
        balance: Token balance currently held by the contract.
        is_revokable: Whether the allocation can be revoked.
        is_revoked: Whether it has been revoked.
        global_lock: Default unlock schedule, in milliseconds.
        milestone_id: Milestone identifier (Milestone ATPs only).
        milestone_status: Milestone status when known.
        operator: Operator address, when exposed by the contract.
        staker: Staker address, when exposed by the contract.
    """

    address: str
    atp_type: ATPType
    beneficiary: str
    allocation: int
    claimed: int
    claimable: int
    balance: int
    is_revokable: bool
    is_revoked: bool = False
    global_lock: Lock | None = None
    milestone_id: int | None = None
    milestone_status: MilestoneStatus | None = None
    operator: str | None = None
    staker: str | None = None

    def effective_lock(self) -> Lock | None:
        """Return the lock that drives this ATP's unlock schedule.

        NonClaim ATPs unlock their full allocation linearly; the amount
        stored in their global lock is not the claimable quantity.
        """
        if self.global_lock is None:
            return None
        if self.atp_type is ATPType.NON_CLAIM:
            return self.global_lock.with_amount(self.allocation)
        return self.global_lock

    def unlock_schedule(self, evaluation_time: int | None = None) -> UnlockSchedule | None:
        from atp_unlock_tracker.vesting.unlock import compute_unlock_schedule

        lock = self.effective_lock()
        if lock is None:
            return None
        return compute_unlock_schedule(lock, evaluation_time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ATPRecord:
        """Create an ATPRecord from its serialized form."""
        global_lock = data.get("globalLock")
        milestone_id = data.get("milestoneId")
        milestone_status = data.get("milestoneStatus")
        return cls(
            address=str(data["address"]).lower(),
            atp_type=ATPType(data["type"]),
            beneficiary=str(data["beneficiary"]).lower(),
            allocation=int(data["allocation"]),
            claimed=int(data["claimed"]),
            claimable=int(data["claimable"]),
            balance=int(data["balance"]),
            is_revokable=bool(data["isRevokable"]),
            is_revoked=bool(data.get("isRevoked", False)),
            global_lock=Lock.from_dict(global_lock) if global_lock else None,
            milestone_id=int(milestone_id) if milestone_id is not None else None,
            milestone_status=MilestoneStatus(milestone_status) if milestone_status else None,
            operator=str(data["operator"]).lower() if data.get("operator") else None,
            staker=str(data["staker"]).lower() if data.get("staker") else None,
        )

    def to_dict(self, *, evaluation_time: int | None = None) -> dict[str, object]:
        """Serialize to JSON-ready data, including the current unlock schedule."""
        payload: dict[str, object] = {
            "address": self.address,
            "type": self.atp_type.value,
            "beneficiary": self.beneficiary,
            "allocation": str(self.allocation),
            "claimed": str(self.claimed),
            "claimable": str(self.claimable),
            "balance": str(self.balance),
            "isRevokable": self.is_revokable,
            "isRevoked": self.is_revoked,
        }
        if self.global_lock is not None:
            payload["globalLock"] = self.global_lock.to_dict()
            schedule = self.unlock_schedule(evaluation_time)
            if schedule is not None:
                payload["unlockSchedule"] = schedule.to_dict()
        if self.milestone_id is not None:
            payload["milestoneId"] = str(self.milestone_id)
        if self.milestone_status is not None:
            payload["milestoneStatus"] = self.milestone_status.value
        if self.operator is not None:
            payload["operator"] = self.operator
        if self.staker is not None:
            payload["staker"] = self.staker
        return payload


@dataclass(frozen=True)
class TokenHolder:
    """A holder of the tracked token, as listed by the holder provider."""

    address: str
    balance: int
    balance_formatted: str
    token_address: str
    holder_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenHolder:
        return cls(
            address=str(data["address"]).lower().strip(),
            balance=int(data["balance"]),
            balance_formatted=str(data.get("balanceFormatted", "")),
            token_address=str(data["tokenAddress"]).lower(),
            holder_type=data.get("type"),
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "address": self.address,
            "balance": str(self.balance),
            "balanceFormatted": self.balance_formatted,
            "tokenAddress": self.token_address,
        }
        if self.holder_type is not None:
            payload["type"] = self.holder_type
        return payload


@dataclass(frozen=True)
class TypeBreakdown:
    """Totals for the ATPs of one type."""

    count: int = 0
    total_allocation: int = 0
    total_claimed: int = 0
    total_claimable: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "count": self.count,
            "totalAllocation": str(self.total_allocation),
            "totalClaimed": str(self.total_claimed),
            "totalClaimable": str(self.total_claimable),
        }


@dataclass(frozen=True)
class ATPStats:
    """Totals and per-type breakdown across a set of ATP records."""

    total_atps: int
    total_allocation: int
    total_claimed: int
    total_claimable: int
    total_balance: int
    by_type: dict[ATPType, TypeBreakdown] = field(default_factory=dict)
    total_holders: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "totalATPs": self.total_atps,
            "totalAllocation": str(self.total_allocation),
            "totalClaimed": str(self.total_claimed),
            "totalClaimable": str(self.total_claimable),
            "totalBalance": str(self.total_balance),
            "byType": {
                atp_type.value: self.by_type.get(atp_type, TypeBreakdown()).to_dict()
                for atp_type in ATPType
            },
            "tokenHolders": {"total": self.total_holders},
        }
