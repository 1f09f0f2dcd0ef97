"""Contract view reads with transparent Multicall3 batching.

This module provides the contract reader used by ATP discovery:
- Concurrent ``read_view`` calls issued in the same event-loop tick are
  coalesced into one Multicall3 ``aggregate3`` request
- Each caller still receives its own result or its own failure
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError
from web3.providers import AsyncHTTPProvider

from atp_unlock_tracker.chain.abi import AGGREGATE3, ViewFunction
from atp_unlock_tracker.config import MULTICALL3_ADDRESS

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_CALLS_PER_BATCH = 500
DEFAULT_PRIMARY_RECOVERY_INTERVAL = 60.0


class ContractReaderError(Exception):
    """Base exception for contract reader errors."""


class ContractReadError(ContractReaderError):
    """Raised when a single view call reverts, returns nothing, or cannot be decoded."""

    def __init__(self, address: str, function_name: str, reason: str) -> None:
        super().__init__(f"{function_name} on {address} failed: {reason}")
        self.address = address
        self.function_name = function_name
        self.reason = reason


class RPCError(ContractReaderError):
    """Raised when the RPC request carrying a call fails."""


class ContractReader(Protocol):
    """Reads one view function on one contract."""

    async def read_view(
        self,
        address: str,
        function: ViewFunction,
        args: Sequence[Any] = (),
    ) -> Any: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass
class ReaderStats:
    """Counters for reads and the RPC requests that carried them."""

    calls_requested: int = 0
    rpc_requests: int = 0
    batches_sent: int = 0
    failed_calls: int = 0


@dataclass
class _PendingCall:
    address: str
    function: ViewFunction
    calldata: bytes
    future: asyncio.Future[Any]


class MulticallContractReader:
    """Contract reader that batches concurrent view calls through Multicall3.

    Example:
        ```python
        reader = MulticallContractReader("https://eth.llamarpc.com")
        kind, beneficiary = await asyncio.gather(
            reader.read_view(atp, GET_TYPE),
            reader.read_view(atp, GET_BENEFICIARY),
        )  # one aggregate3 eth_call
        await reader.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        multicall_address: str = MULTICALL3_ADDRESS,
        multicall_enabled: bool = True,
        max_calls_per_batch: int = DEFAULT_MAX_CALLS_PER_BATCH,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        batch_wait_seconds: float = 0.0,
        web3: AsyncWeb3[Any] | None = None,
        fallback_web3: AsyncWeb3[Any] | None = None,
    ) -> None:
        """Initialize the reader.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            multicall_address: Multicall3 contract address.
            multicall_enabled: If False, every read is its own eth_call.
            max_calls_per_batch: Maximum calls per aggregate3 request.
            max_requests_per_second: Rate limit for RPC requests.
            batch_wait_seconds: Extra time to collect calls before flushing.
            web3: Pre-built client for the primary endpoint.
            fallback_web3: Pre-built client for the fallback endpoint.
        """
        if max_calls_per_batch < 1:
            raise ValueError("max_calls_per_batch must be >= 1")

        self._rpc_url = rpc_url
        self._w3 = web3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback = fallback_web3
        if self._w3_fallback is None and fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._multicall_address = AsyncWeb3.to_checksum_address(multicall_address)
        self._multicall_enabled = multicall_enabled
        self._max_calls = max_calls_per_batch
        self._batch_wait = batch_wait_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Only shared mutable state: calls waiting for the next flush.
        self._pending: list[_PendingCall] = []
        self._flush_handle: asyncio.Handle | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = DEFAULT_PRIMARY_RECOVERY_INTERVAL

        self._stats = ReaderStats()

    @property
    def stats(self) -> ReaderStats:
        return self._stats

    async def read_view(
        self,
        address: str,
        function: ViewFunction,
        args: Sequence[Any] = (),
    ) -> Any:
        """Call ``function`` on ``address`` and return its decoded result.

        Raises:
            ContractReadError: The call reverted, returned no data, or
                returned data that does not decode.
            RPCError: The request carrying the call failed.
        """
        try:
            target = AsyncWeb3.to_checksum_address(address)
        except ValueError as e:
            raise ContractReadError(address, function.name, f"invalid address: {e}") from e
        calldata = function.encode_call(args)
        self._stats.calls_requested += 1

        if not self._multicall_enabled:
            return await self._read_direct(target, function, calldata)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending.append(_PendingCall(target, function, calldata, future))
        if self._flush_handle is None:
            if self._batch_wait > 0:
                self._flush_handle = loop.call_later(self._batch_wait, self._flush)
            else:
                self._flush_handle = loop.call_soon(self._flush)
        return await future

    def _flush(self) -> None:
        self._flush_handle = None
        pending, self._pending = self._pending, []
        for start in range(0, len(pending), self._max_calls):
            chunk = pending[start : start + self._max_calls]
            task = asyncio.get_running_loop().create_task(self._execute_batch(chunk))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _execute_batch(self, chunk: list[_PendingCall]) -> None:
        live = [call for call in chunk if not call.future.done()]
        if not live:
            return

        request = AGGREGATE3.encode_call(
            [[(call.address, True, call.calldata) for call in live]]
        )
        self._stats.batches_sent += 1
        try:
            raw = await self._eth_call(self._multicall_address, request)
            results = AGGREGATE3.decode_result(raw)
            if len(results) != len(live):
                raise RPCError(
                    f"aggregate3 returned {len(results)} results for {len(live)} calls"
                )
        except Exception as e:
            logger.warning("Multicall batch of %d calls failed: %s", len(live), e)
            for call in live:
                self._fail(call, RPCError(f"Batched read {call.function.name} failed: {e}"))
            return

        for call, (success, data) in zip(live, results, strict=True):
            if call.future.done():
                continue
            if not success:
                self._fail(call, ContractReadError(call.address, call.function.name, "reverted"))
            elif not data:
                self._fail(
                    call, ContractReadError(call.address, call.function.name, "returned no data")
                )
            else:
                try:
                    value = call.function.decode_result(bytes(data))
                except Exception as e:
                    self._fail(
                        call,
                        ContractReadError(call.address, call.function.name, f"undecodable: {e}"),
                    )
                else:
                    call.future.set_result(value)

    def _fail(self, call: _PendingCall, error: ContractReaderError) -> None:
        self._stats.failed_calls += 1
        if not call.future.done():
            call.future.set_exception(error)

    async def _read_direct(self, target: str, function: ViewFunction, calldata: bytes) -> Any:
        try:
            raw = await self._eth_call(target, calldata)
        except ContractLogicError as e:
            self._stats.failed_calls += 1
            raise ContractReadError(target, function.name, f"reverted: {e}") from e
        if not raw:
            self._stats.failed_calls += 1
            raise ContractReadError(target, function.name, "returned no data")
        try:
            return function.decode_result(bytes(raw))
        except Exception as e:
            self._stats.failed_calls += 1
            raise ContractReadError(target, function.name, f"undecodable: {e}") from e

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _eth_call(self, to: str, data: bytes) -> bytes:
        """Execute an eth_call with failover to the secondary RPC.

        Reverts propagate as ContractLogicError; transport failures fail
        over, then raise RPCError.
        """
        await self._rate_limiter.acquire()
        self._stats.rpc_requests += 1
        params = {"to": to, "data": "0x" + data.hex()}
        last_error: Exception | None = None

        if self._should_try_primary() or self._w3_fallback is None:
            try:
                result = await self._w3.eth.call(params, "latest")
                self._primary_healthy = True
                return bytes(result)
            except ContractLogicError:
                raise
            except Exception as e:
                last_error = e
                logger.warning("Primary RPC eth_call failed: %s", e)
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            try:
                result = await self._w3_fallback.eth.call(params, "latest")
                logger.info("Fallback RPC succeeded for eth_call")
                return bytes(result)
            except ContractLogicError:
                raise
            except Exception as e:
                last_error = e
                logger.warning("Fallback RPC eth_call failed: %s", e)

        raise RPCError(f"eth_call to {to} failed: {last_error}") from last_error

    async def aclose(self) -> None:
        """Settle in-flight batches and close provider sessions."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)

    async def __aenter__(self) -> MulticallContractReader:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
