"""Batched ATP discovery over a candidate address set.

Each batch runs in two phases: every candidate is probed concurrently,
then the confirmed ATPs are fetched concurrently. Batches run strictly one
after another, so at most one batch's worth of reads is in flight. A
failing address is logged and reported; it never aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from atp_unlock_tracker.discovery.fetcher import ATPFetcher
from atp_unlock_tracker.discovery.probe import ATPProbe, is_valid_address
from atp_unlock_tracker.vesting.models import ATPRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_ADDRESSES = 1000


@dataclass(frozen=True)
class DiscoveryFailure:
    """A confirmed ATP whose state could not be captured."""

    address: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"address": self.address, "error": self.error}


@dataclass
class DiscoveryReport:
    """Outcome of one discovery run."""

    records: list[ATPRecord] = field(default_factory=list)
    failures: list[DiscoveryFailure] = field(default_factory=list)
    candidates_checked: int = 0
    candidates_rejected: int = 0
    atps_confirmed: int = 0
    batches: int = 0


def normalize_candidates(addresses: Iterable[str]) -> tuple[list[str], int]:
    """Lower-case, validate and de-duplicate candidates, preserving order.

    Returns:
        The usable candidates and the number of invalid entries dropped.
    """
    seen: set[str] = set()
    candidates: list[str] = []
    rejected = 0
    for raw in addresses:
        address = raw.strip().lower() if isinstance(raw, str) else raw
        if not is_valid_address(address):
            rejected += 1
            continue
        if address in seen:
            continue
        seen.add(address)
        candidates.append(address)
    return candidates, rejected


class DiscoveryPipeline:
    """Probes candidates for ATP contracts and fetches their state.

    Example:
        ```python
        pipeline = DiscoveryPipeline(ATPProbe(reader), ATPFetcher(reader, token))
        records = await pipeline.discover_and_fetch(holder_addresses)
        ```
    """

    def __init__(
        self,
        probe: ATPProbe,
        fetcher: ATPFetcher,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_addresses: int = DEFAULT_MAX_ADDRESSES,
    ) -> None:
        """Initialize the pipeline.

        Args:
            probe: ATP detector.
            fetcher: ATP state fetcher.
            batch_size: Candidates processed concurrently per batch.
            max_addresses: Maximum candidates to check (0 = unlimited).
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_addresses < 0:
            raise ValueError("max_addresses must be >= 0")
        self._probe = probe
        self._fetcher = fetcher
        self._batch_size = batch_size
        self._max_addresses = max_addresses

    async def discover_and_fetch(self, candidate_addresses: Iterable[str]) -> list[ATPRecord]:
        """Return records for every ATP found among the candidates."""
        report = await self.run(candidate_addresses)
        return report.records

    async def run(self, candidate_addresses: Iterable[str]) -> DiscoveryReport:
        """Discover and fetch ATPs, returning records plus diagnostics."""
        candidates, rejected = normalize_candidates(candidate_addresses)
        if rejected:
            logger.info("Filtered out %d invalid candidate addresses", rejected)
        if self._max_addresses > 0:
            candidates = candidates[: self._max_addresses]

        report = DiscoveryReport(candidates_checked=len(candidates), candidates_rejected=rejected)
        total_batches = (len(candidates) + self._batch_size - 1) // self._batch_size
        logger.info(
            "Checking %d candidate addresses for ATP contracts in %d batches",
            len(candidates),
            total_batches,
        )

        for start in range(0, len(candidates), self._batch_size):
            batch = candidates[start : start + self._batch_size]
            report.batches += 1
            logger.info(
                "Processing batch %d/%d: addresses %d-%d",
                report.batches,
                total_batches,
                start + 1,
                start + len(batch),
            )
            await self._process_batch(batch, report)
            logger.info("Batch complete: %d ATPs found so far", len(report.records))

        logger.info(
            "Discovery complete: %d ATPs fetched, %d failed, out of %d addresses checked",
            len(report.records),
            len(report.failures),
            report.candidates_checked,
        )
        return report

    async def _process_batch(self, batch: list[str], report: DiscoveryReport) -> None:
        probes = await asyncio.gather(
            *(self._probe.is_atp_contract(address) for address in batch),
            return_exceptions=True,
        )
        confirmed = [address for address, is_atp in zip(batch, probes, strict=True) if is_atp is True]
        report.atps_confirmed += len(confirmed)
        if not confirmed:
            return

        fetched = await asyncio.gather(
            *(self._fetcher.fetch_atp_data(address) for address in confirmed),
            return_exceptions=True,
        )
        for address, result in zip(confirmed, fetched, strict=True):
            if isinstance(result, Exception):
                logger.warning("Failed to fetch data for ATP %s: %s", address, result)
                report.failures.append(DiscoveryFailure(address=address, error=str(result)))
            elif isinstance(result, BaseException):
                raise result
            elif result is None:
                logger.warning("Confirmed ATP %s no longer answers getType()", address)
                report.failures.append(
                    DiscoveryFailure(address=address, error="getType() reverted after probe")
                )
            else:
                report.records.append(result)
