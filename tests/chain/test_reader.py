"""Tests for the batching contract reader."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode, encode
from web3.exceptions import ContractLogicError

from atp_unlock_tracker.chain.abi import (
    AGGREGATE3,
    BALANCE_OF,
    GET_BENEFICIARY,
    GET_TYPE,
)
from atp_unlock_tracker.chain.reader import (
    ContractReadError,
    MulticallContractReader,
    RPCError,
)
from atp_unlock_tracker.config import MULTICALL3_ADDRESS

ATP_A = "0x1234567890abcdef1234567890abcdef12345678"
ATP_B = "0x00000000000000000000000000000000000000b0"
BENEFICIARY = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"

# (lower-cased target, calldata) -> (success, return data)
Responder = Callable[[str, bytes], tuple[bool, bytes]]


def multicall_node(responder: Responder) -> AsyncMock:
    """Build an ``eth.call`` mock that executes aggregate3 requests."""

    async def call(params: dict[str, str], _block: str) -> bytes:
        assert params["to"].lower() == MULTICALL3_ADDRESS.lower()
        raw = bytes.fromhex(params["data"][2:])
        assert raw[:4] == AGGREGATE3.selector
        (calls,) = decode(["(address,bool,bytes)[]"], raw[4:])
        results = []
        for target, allow_failure, calldata in calls:
            assert allow_failure is True
            results.append(responder(target.lower(), bytes(calldata)))
        return encode(["(bool,bytes)[]"], [results])

    return AsyncMock(side_effect=call)


def mock_web3(eth_call: AsyncMock) -> MagicMock:
    w3 = MagicMock()
    w3.eth.call = eth_call
    return w3


def standard_responder(target: str, calldata: bytes) -> tuple[bool, bytes]:
    if target == ATP_A and calldata == GET_TYPE.selector:
        return True, encode(["uint8"], [1])
    if target == ATP_A and calldata == GET_BENEFICIARY.selector:
        return True, encode(["address"], [BENEFICIARY])
    if target == ATP_B and calldata == GET_TYPE.selector:
        return False, b""
    if target == ATP_B and calldata == GET_BENEFICIARY.selector:
        return True, b""
    if calldata[:4] == BALANCE_OF.selector:
        return True, encode(["uint256"], [10**21])
    return False, b""


class TestBatching:
    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_request(self) -> None:
        eth_call = multicall_node(standard_responder)
        reader = MulticallContractReader("http://node", web3=mock_web3(eth_call))

        kind, beneficiary, balance = await asyncio.gather(
            reader.read_view(ATP_A, GET_TYPE),
            reader.read_view(ATP_A, GET_BENEFICIARY),
            reader.read_view(ATP_B, BALANCE_OF, [BENEFICIARY]),
        )

        assert kind == 1
        assert beneficiary.lower() == BENEFICIARY.lower()
        assert balance == 10**21
        assert eth_call.await_count == 1
        assert reader.stats.calls_requested == 3
        assert reader.stats.batches_sent == 1
        assert reader.stats.rpc_requests == 1

    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_call(self) -> None:
        eth_call = multicall_node(standard_responder)
        reader = MulticallContractReader("http://node", web3=mock_web3(eth_call))

        results = await asyncio.gather(
            reader.read_view(ATP_A, GET_TYPE),
            reader.read_view(ATP_B, GET_TYPE),
            reader.read_view(ATP_B, GET_BENEFICIARY),
            return_exceptions=True,
        )

        assert results[0] == 1
        assert isinstance(results[1], ContractReadError)
        assert results[1].reason == "reverted"
        assert isinstance(results[2], ContractReadError)
        assert results[2].reason == "returned no data"
        assert reader.stats.failed_calls == 2
        assert eth_call.await_count == 1

    @pytest.mark.asyncio
    async def test_undecodable_result_fails_only_that_call(self) -> None:
        def responder(target: str, calldata: bytes) -> tuple[bool, bytes]:
            if target == ATP_B:
                return True, b"\x01\x02"
            return standard_responder(target, calldata)

        reader = MulticallContractReader("http://node", web3=mock_web3(multicall_node(responder)))

        ok, bad = await asyncio.gather(
            reader.read_view(ATP_A, GET_TYPE),
            reader.read_view(ATP_B, BALANCE_OF, [BENEFICIARY]),
            return_exceptions=True,
        )

        assert ok == 1
        assert isinstance(bad, ContractReadError)
        assert "undecodable" in bad.reason

    @pytest.mark.asyncio
    async def test_transport_failure_fails_whole_batch(self) -> None:
        eth_call = AsyncMock(side_effect=ConnectionError("connection reset"))
        reader = MulticallContractReader("http://node", web3=mock_web3(eth_call))

        results = await asyncio.gather(
            reader.read_view(ATP_A, GET_TYPE),
            reader.read_view(ATP_A, GET_BENEFICIARY),
            return_exceptions=True,
        )

        assert all(isinstance(r, RPCError) for r in results)
        assert reader.stats.failed_calls == 2

    @pytest.mark.asyncio
    async def test_batches_are_chunked(self) -> None:
        eth_call = multicall_node(standard_responder)
        reader = MulticallContractReader(
            "http://node",
            max_calls_per_batch=2,
            web3=mock_web3(eth_call),
        )

        results = await asyncio.gather(*(reader.read_view(ATP_A, GET_TYPE) for _ in range(5)))

        assert results == [1] * 5
        assert eth_call.await_count == 3
        assert reader.stats.batches_sent == 3

    @pytest.mark.asyncio
    async def test_sequential_reads_use_separate_batches(self) -> None:
        eth_call = multicall_node(standard_responder)
        reader = MulticallContractReader("http://node", web3=mock_web3(eth_call))

        assert await reader.read_view(ATP_A, GET_TYPE) == 1
        assert await reader.read_view(ATP_A, GET_TYPE) == 1
        assert eth_call.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_address_rejected_without_rpc(self) -> None:
        eth_call = multicall_node(standard_responder)
        reader = MulticallContractReader("http://node", web3=mock_web3(eth_call))

        with pytest.raises(ContractReadError, match="invalid address"):
            await reader.read_view("not-an-address", GET_TYPE)

        eth_call.assert_not_awaited()

    def test_rejects_empty_batches(self) -> None:
        with pytest.raises(ValueError):
            MulticallContractReader("http://node", max_calls_per_batch=0, web3=MagicMock())


class TestDirectMode:
    @pytest.mark.asyncio
    async def test_reads_without_multicall(self) -> None:
        eth_call = AsyncMock(return_value=encode(["uint8"], [2]))
        reader = MulticallContractReader(
            "http://node", multicall_enabled=False, web3=mock_web3(eth_call)
        )

        assert await reader.read_view(ATP_A, GET_TYPE) == 2

        params = eth_call.await_args.args[0]
        assert params["to"].lower() == ATP_A
        assert params["data"] == "0x" + GET_TYPE.selector.hex()

    @pytest.mark.asyncio
    async def test_revert_becomes_read_error(self) -> None:
        eth_call = AsyncMock(side_effect=ContractLogicError("execution reverted"))
        reader = MulticallContractReader(
            "http://node", multicall_enabled=False, web3=mock_web3(eth_call)
        )

        with pytest.raises(ContractReadError, match="reverted"):
            await reader.read_view(ATP_A, GET_TYPE)

    @pytest.mark.asyncio
    async def test_empty_result_becomes_read_error(self) -> None:
        eth_call = AsyncMock(return_value=b"")
        reader = MulticallContractReader(
            "http://node", multicall_enabled=False, web3=mock_web3(eth_call)
        )

        with pytest.raises(ContractReadError, match="returned no data"):
            await reader.read_view(ATP_A, GET_TYPE)


class TestFailover:
    @pytest.mark.asyncio
    async def test_falls_back_when_primary_fails(self) -> None:
        primary = AsyncMock(side_effect=ConnectionError("primary down"))
        fallback = AsyncMock(return_value=encode(["uint8"], [0]))
        reader = MulticallContractReader(
            "http://primary",
            multicall_enabled=False,
            web3=mock_web3(primary),
            fallback_web3=mock_web3(fallback),
        )

        assert await reader.read_view(ATP_A, GET_TYPE) == 0
        # Primary is marked unhealthy and skipped on the next read.
        assert await reader.read_view(ATP_A, GET_TYPE) == 0

        assert primary.await_count == 1
        assert fallback.await_count == 2

    @pytest.mark.asyncio
    async def test_both_endpoints_failing_raises_rpc_error(self) -> None:
        reader = MulticallContractReader(
            "http://primary",
            multicall_enabled=False,
            web3=mock_web3(AsyncMock(side_effect=ConnectionError("down"))),
            fallback_web3=mock_web3(AsyncMock(side_effect=TimeoutError("slow"))),
        )

        with pytest.raises(RPCError, match="slow"):
            await reader.read_view(ATP_A, GET_TYPE)


class TestClose:
    @pytest.mark.asyncio
    async def test_context_manager_disconnects_provider(self) -> None:
        w3 = mock_web3(multicall_node(standard_responder))
        w3.provider.disconnect = AsyncMock()

        async with MulticallContractReader("http://node", web3=w3) as reader:
            assert await reader.read_view(ATP_A, GET_TYPE) == 1

        w3.provider.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_settles_pending_reads(self) -> None:
        reader = MulticallContractReader(
            "http://node",
            batch_wait_seconds=60,
            web3=mock_web3(multicall_node(standard_responder)),
        )

        task = asyncio.create_task(reader.read_view(ATP_A, GET_TYPE))
        await asyncio.sleep(0)
        await reader.aclose()

        assert await task == 1
