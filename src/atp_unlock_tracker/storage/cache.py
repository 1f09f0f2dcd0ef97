"""Redis-backed cache of refresh results and the refresh lock.

Caching is best-effort: read and write failures are logged and treated as
cache misses. With no Redis client every operation is a no-op and the
lock is always granted.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from redis.asyncio import Redis

from atp_unlock_tracker.vesting.models import ATPRecord, TokenHolder

logger = logging.getLogger(__name__)

CACHE_KEY_HOLDERS = "atp:holders"
CACHE_KEY_ATPS = "atp:atps"
CACHE_KEY_STATS = "atp:stats"
CACHE_KEY_LAST_REFRESH = "atp:last_refresh"
CACHE_KEY_HOLDERS_LAST_REFRESH = "atp:holders:last_refresh"
REFRESH_LOCK_KEY = "atp:refresh:lock"

DEFAULT_REFRESH_INTERVAL_SECONDS = 86_400
DEFAULT_LOCK_TTL_SECONDS = 3600
# Refreshes younger than this fraction of the interval are skipped.
SKIP_THRESHOLD_FRACTION = 0.9


class RefreshLockError(Exception):
    """Raised when another refresh already holds the lock."""


class RefreshCache:
    """Stores holders, ATP records and stats between refresh runs."""

    def __init__(
        self,
        redis: Redis | None,
        *,
        refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self._redis = redis
        self._refresh_interval = refresh_interval_seconds
        self._lock_ttl = lock_ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def _get(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None

    async def _set(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value)
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    async def _get_json(self, key: str) -> Any | None:
        cached = await self._get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError as e:
            logger.warning("Discarding unparseable cache entry %s: %s", key, e)
            return None

    async def get_holders(self) -> list[TokenHolder] | None:
        data = await self._get_json(CACHE_KEY_HOLDERS)
        if not isinstance(data, list):
            return None
        try:
            return [TokenHolder.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse cached holders: %s", e)
            return None

    async def set_holders(self, holders: list[TokenHolder]) -> None:
        await self._set(CACHE_KEY_HOLDERS, json.dumps([h.to_dict() for h in holders]))

    async def get_atps(self) -> list[ATPRecord] | None:
        data = await self._get_json(CACHE_KEY_ATPS)
        if not isinstance(data, list):
            return None
        try:
            return [ATPRecord.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse cached ATP records: %s", e)
            return None

    async def set_atps(self, records: list[ATPRecord], *, evaluation_time: int | None = None) -> None:
        payload = [r.to_dict(evaluation_time=evaluation_time) for r in records]
        await self._set(CACHE_KEY_ATPS, json.dumps(payload))

    async def get_stats(self) -> dict[str, Any] | None:
        data = await self._get_json(CACHE_KEY_STATS)
        return data if isinstance(data, dict) else None

    async def set_stats(self, data: dict[str, Any]) -> None:
        await self._set(CACHE_KEY_STATS, json.dumps(data))

    async def _get_timestamp(self, key: str) -> int | None:
        cached = await self._get(key)
        if cached is None:
            return None
        try:
            return int(cached)
        except ValueError:
            logger.warning("Discarding malformed timestamp in %s: %r", key, cached)
            return None

    async def get_last_refresh(self) -> int | None:
        """Unix seconds of the last completed refresh."""
        return await self._get_timestamp(CACHE_KEY_LAST_REFRESH)

    async def set_last_refresh(self, timestamp: int) -> None:
        await self._set(CACHE_KEY_LAST_REFRESH, str(int(timestamp)))

    async def get_holders_last_refresh(self) -> int | None:
        return await self._get_timestamp(CACHE_KEY_HOLDERS_LAST_REFRESH)

    async def set_holders_last_refresh(self, timestamp: int) -> None:
        await self._set(CACHE_KEY_HOLDERS_LAST_REFRESH, str(int(timestamp)))

    def _is_recent(self, last: int | None, now: int | None) -> bool:
        if last is None:
            return False
        current = int(time.time()) if now is None else now
        return (current - last) < self._refresh_interval * SKIP_THRESHOLD_FRACTION

    async def should_skip_refresh(self, *, now: int | None = None) -> bool:
        if not self._redis:
            return False
        return self._is_recent(await self.get_last_refresh(), now)

    async def should_skip_holders_refresh(self, *, now: int | None = None) -> bool:
        if not self._redis:
            return False
        return self._is_recent(await self.get_holders_last_refresh(), now)

    async def acquire_refresh_lock(self) -> bool:
        """Atomically take the refresh lock; False if already held."""
        if not self._redis:
            return True
        acquired = await self._redis.set(REFRESH_LOCK_KEY, "1", nx=True, ex=self._lock_ttl)
        return bool(acquired)

    async def release_refresh_lock(self) -> None:
        if not self._redis:
            return
        try:
            await self._redis.delete(REFRESH_LOCK_KEY)
        except Exception as e:
            logger.warning("Failed to release refresh lock: %s", e)

    @asynccontextmanager
    async def refresh_lock(self) -> AsyncIterator[None]:
        """Hold the refresh lock for the duration of the block.

        Raises:
            RefreshLockError: If another refresh holds the lock.
        """
        if not await self.acquire_refresh_lock():
            raise RefreshLockError("Cache refresh already in progress")
        try:
            yield
        finally:
            await self.release_refresh_lock()

    async def clear(self) -> None:
        if not self._redis:
            return
        try:
            await self._redis.delete(
                CACHE_KEY_HOLDERS,
                CACHE_KEY_ATPS,
                CACHE_KEY_STATS,
                CACHE_KEY_LAST_REFRESH,
                CACHE_KEY_HOLDERS_LAST_REFRESH,
            )
        except Exception as e:
            logger.warning("Error clearing cache: %s", e)
