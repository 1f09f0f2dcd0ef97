"""Storage layer - Refresh cache and lock."""

from atp_unlock_tracker.storage.cache import RefreshCache, RefreshLockError

__all__ = [
    "RefreshCache",
    "RefreshLockError",
]
