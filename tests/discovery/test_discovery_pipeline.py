"""Tests for batched ATP discovery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from atp_unlock_tracker.chain.reader import RPCError
from atp_unlock_tracker.discovery.fetcher import ATPFetcher, ATPFetchError
from atp_unlock_tracker.discovery.pipeline import DiscoveryPipeline, normalize_candidates
from atp_unlock_tracker.discovery.probe import ATPProbe
from atp_unlock_tracker.vesting.models import ATPType
from conftest import TOKEN_ADDRESS, FakeContractReader


def address(n: int) -> str:
    return f"0x{n:040x}"


def make_pipeline(reader: FakeContractReader, **kwargs: int) -> DiscoveryPipeline:
    fetcher = ATPFetcher(reader, TOKEN_ADDRESS, max_attempts=2, base_delay=0)
    return DiscoveryPipeline(ATPProbe(reader), fetcher, **kwargs)


class TestNormalizeCandidates:
    def test_lowercases_and_dedupes_in_order(self) -> None:
        candidates, rejected = normalize_candidates(
            [
                "0x00000000000000000000000000000000000000AB",
                address(1),
                " 0x00000000000000000000000000000000000000ab ",
            ]
        )

        assert candidates == [address(0xAB), address(1)]
        assert rejected == 0

    def test_counts_invalid_entries(self) -> None:
        candidates, rejected = normalize_candidates(
            ["", "0x1234", address(0), address(2), "zz"]
        )

        assert candidates == [address(2)]
        assert rejected == 4


class TestDiscoveryPipeline:
    @pytest.mark.asyncio
    async def test_mixed_candidates_with_partial_failure(
        self,
        fake_reader: FakeContractReader,
        install_atp: Callable[..., None],
    ) -> None:
        candidates = [address(n) for n in range(1, 11)]
        install_atp(fake_reader, candidates[1], atp_type=0)
        install_atp(fake_reader, candidates[4], atp_type=1)
        install_atp(fake_reader, candidates[7], atp_type=2)
        fake_reader.set(candidates[7], "getAllocation", RPCError("timeout"))

        report = await make_pipeline(fake_reader, batch_size=4).run(candidates)

        assert [r.address for r in report.records] == [candidates[1], candidates[4]]
        assert [r.atp_type for r in report.records] == [ATPType.LINEAR, ATPType.MILESTONE]
        assert [f.address for f in report.failures] == [candidates[7]]
        assert "allocation" in report.failures[0].error
        assert report.candidates_checked == 10
        assert report.atps_confirmed == 3
        assert report.batches == 3

    @pytest.mark.asyncio
    async def test_discover_and_fetch_returns_records(
        self,
        fake_reader: FakeContractReader,
        install_atp: Callable[..., None],
    ) -> None:
        install_atp(fake_reader, address(3))

        records = await make_pipeline(fake_reader).discover_and_fetch(
            [address(1), address(3), "junk"]
        )

        assert [r.address for r in records] == [address(3)]

    @pytest.mark.asyncio
    async def test_no_atps(self, fake_reader: FakeContractReader) -> None:
        report = await make_pipeline(fake_reader).run([address(n) for n in range(1, 6)])

        assert report.records == []
        assert report.failures == []
        assert report.atps_confirmed == 0

    @pytest.mark.asyncio
    async def test_empty_input(self, fake_reader: FakeContractReader) -> None:
        report = await make_pipeline(fake_reader).run([])

        assert report.records == []
        assert report.batches == 0

    @pytest.mark.asyncio
    async def test_max_addresses_caps_candidates(
        self,
        fake_reader: FakeContractReader,
        install_atp: Callable[..., None],
    ) -> None:
        for n in range(1, 6):
            install_atp(fake_reader, address(n))

        report = await make_pipeline(fake_reader, max_addresses=2).run(
            [address(n) for n in range(1, 6)]
        )

        assert report.candidates_checked == 2
        assert [r.address for r in report.records] == [address(1), address(2)]
        assert fake_reader.calls_to(address(3)) == []

    @pytest.mark.asyncio
    async def test_batches_run_sequentially(self) -> None:
        in_flight = 0
        peak = 0

        async def probe(_address: str) -> bool:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return False

        probe_mock = MagicMock(spec=ATPProbe)
        probe_mock.is_atp_contract = AsyncMock(side_effect=probe)
        fetcher_mock = MagicMock(spec=ATPFetcher)

        pipeline = DiscoveryPipeline(probe_mock, fetcher_mock, batch_size=3)
        report = await pipeline.run([address(n) for n in range(1, 8)])

        assert report.batches == 3
        assert peak <= 3
        assert probe_mock.is_atp_contract.await_count == 7
        fetcher_mock.fetch_atp_data.assert_not_called()

    @pytest.mark.asyncio
    async def test_probe_exception_treated_as_not_atp(self) -> None:
        probe_mock = MagicMock(spec=ATPProbe)
        probe_mock.is_atp_contract = AsyncMock(side_effect=RuntimeError("boom"))
        fetcher_mock = MagicMock(spec=ATPFetcher)

        report = await DiscoveryPipeline(probe_mock, fetcher_mock).run([address(1)])

        assert report.records == []
        assert report.atps_confirmed == 0

    @pytest.mark.asyncio
    async def test_fetch_error_recorded_not_raised(self) -> None:
        probe_mock = MagicMock(spec=ATPProbe)
        probe_mock.is_atp_contract = AsyncMock(return_value=True)
        fetcher_mock = MagicMock(spec=ATPFetcher)
        fetcher_mock.fetch_atp_data = AsyncMock(side_effect=ATPFetchError("gave up"))

        report = await DiscoveryPipeline(probe_mock, fetcher_mock).run([address(1), address(2)])

        assert len(report.failures) == 2
        assert report.failures[0].to_dict() == {"address": address(1), "error": "gave up"}

    @pytest.mark.asyncio
    async def test_type_timeout_after_probe_is_retried(
        self,
        fake_reader: FakeContractReader,
        install_atp: Callable[..., None],
    ) -> None:
        install_atp(fake_reader, address(1))
        type_reads: list[None] = []

        def get_type() -> object:
            type_reads.append(None)
            # The probe's read succeeds; the fetch's first read times out.
            return RPCError("timeout") if len(type_reads) == 2 else 0

        fake_reader.set(address(1), "getType", get_type)

        report = await make_pipeline(fake_reader).run([address(1)])

        assert [r.address for r in report.records] == [address(1)]
        assert report.failures == []
        assert len(type_reads) == 3

    @pytest.mark.asyncio
    async def test_type_timeout_exhausted_is_recorded(
        self,
        fake_reader: FakeContractReader,
        install_atp: Callable[..., None],
    ) -> None:
        install_atp(fake_reader, address(1))
        type_reads: list[None] = []

        def get_type() -> object:
            type_reads.append(None)
            return 0 if len(type_reads) == 1 else RPCError("timeout")

        fake_reader.set(address(1), "getType", get_type)

        report = await make_pipeline(fake_reader).run([address(1)])

        assert report.records == []
        assert report.atps_confirmed == 1
        assert [f.address for f in report.failures] == [address(1)]
        assert "type" in report.failures[0].error

    @pytest.mark.asyncio
    async def test_confirmed_atp_returning_none_is_recorded(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        probe_mock = MagicMock(spec=ATPProbe)
        probe_mock.is_atp_contract = AsyncMock(return_value=True)
        fetcher_mock = MagicMock(spec=ATPFetcher)
        fetcher_mock.fetch_atp_data = AsyncMock(return_value=None)

        with caplog.at_level(logging.WARNING):
            report = await DiscoveryPipeline(probe_mock, fetcher_mock).run([address(1)])

        assert report.records == []
        assert [f.address for f in report.failures] == [address(1)]
        assert address(1) in caplog.text

    def test_rejects_bad_batch_size(self) -> None:
        with pytest.raises(ValueError):
            DiscoveryPipeline(MagicMock(), MagicMock(), batch_size=0)
