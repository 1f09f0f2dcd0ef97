"""Full state retrieval for ATP contracts.

All reads for one ATP are issued concurrently so the contract reader can
pack them into a single batch. Required fields are retried as a unit;
optional fields fall back to defaults. A ``getType()`` that reverts or
returns nothing means the address is not an ATP at all, which is reported
as ``None`` rather than an error; a transport failure on it is retried like
any other required read.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from web3 import AsyncWeb3

from atp_unlock_tracker.chain.abi import (
    BALANCE_OF,
    GET_ALLOCATION,
    GET_BENEFICIARY,
    GET_CLAIMABLE,
    GET_CLAIMED,
    GET_GLOBAL_LOCK,
    GET_IS_REVOKABLE,
    GET_IS_REVOKED,
    GET_MILESTONE_ID,
    GET_OPERATOR,
    GET_STAKER,
    GET_TYPE,
    ViewFunction,
)
from atp_unlock_tracker.chain.reader import ContractReader, ContractReadError
from atp_unlock_tracker.chain.results import ReadResult, settle
from atp_unlock_tracker.chain.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    RetryError,
    retry_async,
)
from atp_unlock_tracker.discovery.probe import is_valid_address
from atp_unlock_tracker.vesting.models import ATPRecord, ATPType, Lock

logger = logging.getLogger(__name__)

MS_PER_SECOND = 1000

ATP_TYPE_BY_DISCRIMINATOR: dict[int, ATPType] = {
    0: ATPType.LINEAR,
    1: ATPType.MILESTONE,
    2: ATPType.NON_CLAIM,
}

# Reads against the ATP itself; "balance" is read from the token contract.
REQUIRED_READS: dict[str, ViewFunction] = {
    "type": GET_TYPE,
    "beneficiary": GET_BENEFICIARY,
    "allocation": GET_ALLOCATION,
    "claimed": GET_CLAIMED,
    "claimable": GET_CLAIMABLE,
    "is_revokable": GET_IS_REVOKABLE,
    "global_lock": GET_GLOBAL_LOCK,
}
OPTIONAL_READS: dict[str, ViewFunction] = {
    "is_revoked": GET_IS_REVOKED,
    "milestone_id": GET_MILESTONE_ID,
    "operator": GET_OPERATOR,
    "staker": GET_STAKER,
}


class ATPFetchError(Exception):
    """Raised when a confirmed ATP's state cannot be captured."""


class ATPReadError(ATPFetchError):
    """Raised when required reads fail; retryable."""

    def __init__(self, address: str, missing: Sequence[str], cause: BaseException | None) -> None:
        super().__init__(
            f"Required ATP fields unavailable for {address}: {', '.join(missing)} ({cause})"
        )
        self.address = address
        self.missing = tuple(missing)


class ATPDataError(ATPFetchError):
    """Raised when on-chain values are malformed; not retried."""


def map_atp_type(discriminator: Any, *, address: str = "") -> ATPType:
    """Map a ``getType()`` value to an ATPType, defaulting to Linear."""
    try:
        atp_type = ATP_TYPE_BY_DISCRIMINATOR.get(int(discriminator))
    except (TypeError, ValueError):
        atp_type = None
    if atp_type is None:
        logger.warning(
            "Unrecognized ATP type discriminator %r for %s; defaulting to Linear",
            discriminator,
            address or "(unknown)",
        )
        return ATPType.LINEAR
    return atp_type


def lock_from_global_lock_tuple(value: Sequence[Any]) -> Lock:
    """Convert ``getGlobalLock()`` output into a millisecond Lock.

    The contract reports absolute second timestamps
    ``(startTime, cliff, endTime, amount)``; the Lock holds a millisecond
    start and millisecond durations measured from that start.

    Raises:
        ATPDataError: If the tuple is malformed or its timestamps are out
            of order.
    """
    try:
        start_s, cliff_s, end_s, amount = (int(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ATPDataError(f"Malformed global lock {value!r}: {e}") from e

    try:
        return Lock(
            start_time=start_s * MS_PER_SECOND,
            cliff_duration=(cliff_s - start_s) * MS_PER_SECOND,
            lock_duration=(end_s - start_s) * MS_PER_SECOND,
            amount=amount,
        )
    except ValueError as e:
        raise ATPDataError(f"Invalid global lock {value!r}: {e}") from e


def _optional_address(result: ReadResult) -> str | None:
    if result.ok and isinstance(result.value, str) and AsyncWeb3.is_address(result.value):
        return result.value.lower()
    return None


class ATPFetcher:
    """Retrieves ATPRecords for candidate addresses."""

    def __init__(
        self,
        reader: ContractReader,
        token_address: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ) -> None:
        """Initialize the fetcher.

        Args:
            reader: Contract reader used for all view calls.
            token_address: ERC-20 token whose balance each ATP holds.
            max_attempts: Attempts per fetch before giving up.
            base_delay: Base backoff delay in seconds.
        """
        self._reader = reader
        self._token_address = token_address
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    async def fetch_atp_data(self, address: str) -> ATPRecord | None:
        """Fetch the full state of the ATP at ``address``.

        Returns:
            The record, or None if ``address`` is not an ATP.

        Raises:
            ATPFetchError: If the ATP's required fields could not be read
                after all retries, or its data is malformed.
        """
        if not is_valid_address(address):
            return None
        try:
            return await retry_async(
                lambda: self._fetch_once(address),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                retry_on=(ATPReadError,),
                description=f"fetch ATP {address}",
            )
        except RetryError as e:
            raise ATPFetchError(
                f"Failed to fetch ATP data for {address}: {e.last_exception}"
            ) from e

    async def _fetch_once(self, address: str) -> ATPRecord | None:
        holder = AsyncWeb3.to_checksum_address(address)
        names = [*REQUIRED_READS, "balance", *OPTIONAL_READS]
        reads = [
            *(self._reader.read_view(address, fn) for fn in REQUIRED_READS.values()),
            self._reader.read_view(
                self._token_address,
                BALANCE_OF,
                [holder],
            ),
            *(self._reader.read_view(address, fn) for fn in OPTIONAL_READS.values()),
        ]
        settled = await asyncio.gather(*(settle(read) for read in reads))
        results = dict(zip(names, settled, strict=True))

        type_error = results["type"].error
        if isinstance(type_error, ContractReadError):
            return None
        if type_error is not None:
            raise ATPReadError(address, ["type"], type_error)

        missing = [name for name in (*REQUIRED_READS, "balance") if not results[name].ok]
        if missing:
            raise ATPReadError(address, missing, results[missing[0]].error)

        atp_type = map_atp_type(results["type"].value, address=address)
        beneficiary = results["beneficiary"].value
        if not (isinstance(beneficiary, str) and AsyncWeb3.is_address(beneficiary)):
            raise ATPDataError(f"Invalid beneficiary {beneficiary!r} for {address}")

        is_revoked = results["is_revoked"]
        milestone_id = results["milestone_id"]

        return ATPRecord(
            address=address.lower(),
            atp_type=atp_type,
            beneficiary=beneficiary.lower(),
            allocation=int(results["allocation"].value),
            claimed=int(results["claimed"].value),
            claimable=int(results["claimable"].value),
            balance=int(results["balance"].value),
            is_revokable=bool(results["is_revokable"].value),
            is_revoked=bool(is_revoked.value) if is_revoked.ok else False,
            global_lock=lock_from_global_lock_tuple(results["global_lock"].value),
            milestone_id=(
                int(milestone_id.value)
                if atp_type is ATPType.MILESTONE and milestone_id.ok
                else None
            ),
            operator=_optional_address(results["operator"]),
            staker=_optional_address(results["staker"]),
        )
