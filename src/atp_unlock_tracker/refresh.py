"""Refresh orchestrator for the ATP unlock tracker.

This module wires the holder provider, discovery pipeline, unlock math and
cache into one refresh run.

Refresh flow:
    Token holders → DiscoveryPipeline (probe → fetch) → unlock schedules
    → aggregate stats → cache
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from redis.asyncio import Redis

from atp_unlock_tracker.chain.reader import MulticallContractReader
from atp_unlock_tracker.config import Settings, get_settings
from atp_unlock_tracker.discovery.fetcher import ATPFetcher
from atp_unlock_tracker.discovery.pipeline import DiscoveryFailure, DiscoveryPipeline
from atp_unlock_tracker.discovery.probe import ATPProbe
from atp_unlock_tracker.holders.moralis import MoralisHolderProvider
from atp_unlock_tracker.storage.cache import RefreshCache, RefreshLockError
from atp_unlock_tracker.vesting.models import ATPRecord, TokenHolder
from atp_unlock_tracker.vesting.stats import compute_atp_stats
from atp_unlock_tracker.vesting.unlock import MS_PER_SECOND, compute_aggregate_unlock_stats, now_ms

logger = logging.getLogger(__name__)

HOLDER_TYPE_ATP = "atp"


class HolderProvider(Protocol):
    async def get_token_holders(self, token_address: str) -> list[TokenHolder]: ...


class RefreshStatus(str, Enum):
    """Outcome of a refresh request."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"


@dataclass
class RefreshOutcome:
    """Result of one refresh request."""

    status: RefreshStatus
    message: str
    data: dict[str, Any] | None = None
    holders_count: int = 0
    failures: list[DiscoveryFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is RefreshStatus.COMPLETED

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
        }
        if self.data is not None:
            payload["stats"] = {
                "holdersCount": self.holders_count,
                "atpsCount": len(self.data["atps"]),
                "failedCount": len(self.failures),
                "lastUpdated": self.data["lastUpdated"],
            }
        if self.failures:
            payload["failures"] = [f.to_dict() for f in self.failures]
        return payload


def build_dashboard(
    records: Sequence[ATPRecord],
    holders: Sequence[TokenHolder],
    *,
    evaluation_time: int,
) -> dict[str, Any]:
    """Assemble the JSON-ready dashboard payload for one refresh."""
    atp_addresses = {record.address for record in records}
    annotated = [
        dataclasses.replace(holder, holder_type=HOLDER_TYPE_ATP)
        if holder.address.lower() in atp_addresses
        else holder
        for holder in holders
    ]

    stats = compute_atp_stats(records, total_holders=len(holders)).to_dict()
    stats["tokenHolders"] = {
        "total": len(holders),
        "holders": [holder.to_dict() for holder in annotated],
    }

    locks = [lock for lock in (r.effective_lock() for r in records) if lock is not None]
    unlock_stats = compute_aggregate_unlock_stats(locks, evaluation_time)

    return {
        "stats": stats,
        "unlockStats": unlock_stats.to_dict(),
        "atps": [record.to_dict(evaluation_time=evaluation_time) for record in records],
        "lastUpdated": evaluation_time,
    }


def build_reader(settings: Settings) -> MulticallContractReader:
    """Create the contract reader described by ``settings``."""
    return MulticallContractReader(
        settings.chain.rpc_url,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        multicall_address=settings.chain.multicall_address,
        multicall_enabled=settings.chain.multicall_enabled,
        max_calls_per_batch=settings.chain.max_calls_per_batch,
        max_requests_per_second=settings.chain.max_requests_per_second,
    )


def build_fetcher(settings: Settings, reader: MulticallContractReader) -> ATPFetcher:
    return ATPFetcher(
        reader,
        settings.token.address,
        max_attempts=settings.discovery.retry_attempts,
        base_delay=settings.discovery.retry_base_delay_seconds,
    )


class RefreshService:
    """Runs discovery refreshes and caches their results.

    Example:
        ```python
        service = RefreshService.from_settings(get_settings())
        async with service:
            outcome = await service.refresh(force=True)
        ```
    """

    def __init__(
        self,
        *,
        token_address: str,
        holder_provider: HolderProvider,
        pipeline: DiscoveryPipeline,
        cache: RefreshCache,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._token_address = token_address.lower()
        self._holder_provider = holder_provider
        self._pipeline = pipeline
        self._cache = cache
        self._clock = clock
        self._closers: list[Callable[[], Awaitable[None]]] = []

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RefreshService:
        """Build a service and the resources it owns from settings."""
        settings = settings or get_settings()

        reader = build_reader(settings)
        pipeline = DiscoveryPipeline(
            ATPProbe(reader),
            build_fetcher(settings, reader),
            batch_size=settings.discovery.batch_size,
            max_addresses=settings.discovery.max_addresses,
        )
        api_key = settings.holders.api_key
        holder_provider = MoralisHolderProvider(
            api_key.get_secret_value() if api_key else "",
            base_url=settings.holders.base_url,
            chain=settings.holders.chain,
            page_size=settings.holders.page_size,
            max_pages=settings.holders.max_pages,
            max_attempts=settings.discovery.retry_attempts,
            base_delay=settings.discovery.retry_base_delay_seconds,
        )
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
        cache = RefreshCache(
            redis,
            refresh_interval_seconds=settings.redis.refresh_interval_seconds,
            lock_ttl_seconds=settings.redis.refresh_lock_ttl_seconds,
        )
        if not cache.enabled:
            logger.warning("REDIS_URL not set - caching and refresh lock disabled")

        service = cls(
            token_address=settings.token.address,
            holder_provider=holder_provider,
            pipeline=pipeline,
            cache=cache,
        )
        service._closers = [reader.aclose, holder_provider.aclose]
        if redis is not None:
            service._closers.append(redis.aclose)
        return service

    def _now_seconds(self) -> int:
        return self._clock() // MS_PER_SECOND

    async def refresh(self, *, force: bool = False) -> RefreshOutcome:
        """Refresh holders and ATP data unless a recent refresh exists.

        Args:
            force: Bypass the recent-refresh skip checks.
        """
        if not force and await self._cache.should_skip_refresh(now=self._now_seconds()):
            logger.info("Skipping refresh - data was recently refreshed")
            return RefreshOutcome(
                RefreshStatus.SKIPPED, "Refresh skipped - data was recently refreshed"
            )

        try:
            async with self._cache.refresh_lock():
                logger.info("Starting cache refresh...")
                holders = await self._refresh_holders(force=force)
                return await self._refresh_atps(holders)
        except RefreshLockError:
            logger.info("Cache refresh already in progress, skipping...")
            return RefreshOutcome(RefreshStatus.IN_PROGRESS, "Cache refresh already in progress")

    async def _refresh_holders(self, *, force: bool) -> list[TokenHolder]:
        if not force and await self._cache.should_skip_holders_refresh(now=self._now_seconds()):
            cached = await self._cache.get_holders()
            if cached:
                logger.info("Using cached holders: %d holders", len(cached))
                return cached
            logger.info("No cached holders found, fetching fresh data...")

        holders = await self._holder_provider.get_token_holders(self._token_address)
        await self._cache.set_holders(holders)
        await self._cache.set_holders_last_refresh(self._now_seconds())
        return holders

    async def _refresh_atps(self, holders: list[TokenHolder]) -> RefreshOutcome:
        report = await self._pipeline.run(holder.address for holder in holders)

        evaluation_time = self._clock()
        data = build_dashboard(report.records, holders, evaluation_time=evaluation_time)

        await self._cache.set_atps(report.records, evaluation_time=evaluation_time)
        await self._cache.set_stats(data)
        await self._cache.set_last_refresh(evaluation_time // MS_PER_SECOND)
        logger.info(
            "Cache refresh complete: %d holders, %d ATPs, %d failures",
            len(holders),
            len(report.records),
            len(report.failures),
        )

        return RefreshOutcome(
            RefreshStatus.COMPLETED,
            "Cache refreshed successfully",
            data=data,
            holders_count=len(holders),
            failures=list(report.failures),
        )

    async def cached_dashboard(self) -> dict[str, Any] | None:
        """Return the last cached dashboard payload, if any."""
        return await self._cache.get_stats()

    async def aclose(self) -> None:
        for close in self._closers:
            try:
                await close()
            except Exception as e:
                logger.warning("Failed to close resource: %s", e)
        self._closers = []

    async def __aenter__(self) -> RefreshService:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
