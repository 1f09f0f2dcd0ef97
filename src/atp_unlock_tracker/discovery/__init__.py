"""Discovery layer - ATP detection, state fetching and batched discovery."""

from atp_unlock_tracker.discovery.fetcher import (
    ATPDataError,
    ATPFetcher,
    ATPFetchError,
    ATPReadError,
)
from atp_unlock_tracker.discovery.pipeline import (
    DiscoveryFailure,
    DiscoveryPipeline,
    DiscoveryReport,
)
from atp_unlock_tracker.discovery.probe import ATPProbe, is_valid_address

__all__ = [
    "ATPDataError",
    "ATPFetchError",
    "ATPFetcher",
    "ATPProbe",
    "ATPReadError",
    "DiscoveryFailure",
    "DiscoveryPipeline",
    "DiscoveryReport",
    "is_valid_address",
]
