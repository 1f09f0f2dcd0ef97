"""Holder listing layer - Candidate addresses for ATP discovery."""

from atp_unlock_tracker.holders.moralis import (
    HolderProviderError,
    HolderProviderTransientError,
    MoralisHolderProvider,
)

__all__ = [
    "HolderProviderError",
    "HolderProviderTransientError",
    "MoralisHolderProvider",
]
