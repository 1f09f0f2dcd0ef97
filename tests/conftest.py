"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from atp_unlock_tracker.chain.abi import BALANCE_OF, ViewFunction
from atp_unlock_tracker.chain.reader import ContractReadError

TOKEN_ADDRESS = "0xa27ec0006e59f245217ff08cd52a7e8b169e62d2"
BENEFICIARY = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"

# 2025-01-01T00:00:00Z
START_SECONDS = 1_735_689_600
DAY_SECONDS = 86_400


class FakeContractReader:
    """In-memory contract reader keyed by (address, function name).

    A stored value may be an exception instance (raised) or a zero-argument
    callable (invoked on every read, e.g. to fail a fixed number of times).
    Unknown reads fail like a call to a non-ATP address.
    """

    def __init__(self) -> None:
        self.responses: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, tuple[Any, ...]]] = []

    @staticmethod
    def _key(address: str, function: ViewFunction, args: Sequence[Any]) -> tuple[str, str]:
        if function.name == BALANCE_OF.name:
            return (address.lower(), f"balanceOf:{str(args[0]).lower()}")
        return (address.lower(), function.name)

    def set(self, address: str, function_name: str, value: Any) -> None:
        self.responses[(address.lower(), function_name)] = value

    def set_balance(self, holder: str, value: Any, *, token: str = TOKEN_ADDRESS) -> None:
        self.responses[(token.lower(), f"balanceOf:{holder.lower()}")] = value

    def calls_to(self, address: str) -> list[str]:
        return [name for addr, name, _ in self.calls if addr == address.lower()]

    async def read_view(
        self,
        address: str,
        function: ViewFunction,
        args: Sequence[Any] = (),
    ) -> Any:
        self.calls.append((address.lower(), function.name, tuple(args)))
        key = self._key(address, function, args)
        if key not in self.responses:
            raise ContractReadError(address, function.name, "returned no data")
        value = self.responses[key]
        if callable(value):
            value = value()
        if isinstance(value, BaseException):
            raise value
        return value


class FakeRedis:
    """Minimal in-memory stand-in for redis.asyncio.Redis."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value.encode()
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


def _install_atp(
    reader: FakeContractReader,
    address: str,
    *,
    atp_type: int = 0,
    beneficiary: str = BENEFICIARY,
    allocation: int = 1_000 * 10**18,
    claimed: int = 0,
    claimable: int = 0,
    balance: int | None = None,
    is_revokable: bool = False,
    is_revoked: bool | None = None,
    global_lock: tuple[int, int, int, int] | None = None,
    milestone_id: int | None = None,
) -> None:
    if global_lock is None:
        global_lock = (
            START_SECONDS,
            START_SECONDS + 30 * DAY_SECONDS,
            START_SECONDS + 365 * DAY_SECONDS,
            allocation,
        )
    reader.set(address, "getType", atp_type)
    reader.set(address, "getBeneficiary", beneficiary)
    reader.set(address, "getAllocation", allocation)
    reader.set(address, "getClaimed", claimed)
    reader.set(address, "getClaimable", claimable)
    reader.set(address, "getIsRevokable", is_revokable)
    reader.set(address, "getGlobalLock", global_lock)
    reader.set_balance(address, allocation - claimed if balance is None else balance)
    if is_revoked is not None:
        reader.set(address, "getIsRevoked", is_revoked)
    if milestone_id is not None:
        reader.set(address, "getMilestoneId", milestone_id)


@pytest.fixture
def fake_reader() -> FakeContractReader:
    """Empty in-memory contract reader."""
    return FakeContractReader()


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Empty in-memory Redis."""
    return FakeRedis()


@pytest.fixture
def install_atp() -> Callable[..., None]:
    """Register a well-formed ATP contract on a FakeContractReader."""
    return _install_atp


@pytest.fixture
def token_address() -> str:
    return TOKEN_ADDRESS


@pytest.fixture
def atp_address() -> str:
    """Sample ATP contract address."""
    return "0x1234567890abcdef1234567890abcdef12345678"
