"""Chain access layer - Batched contract reads and retry policy."""

from atp_unlock_tracker.chain.abi import ViewFunction
from atp_unlock_tracker.chain.reader import (
    ContractReader,
    ContractReaderError,
    ContractReadError,
    MulticallContractReader,
    RPCError,
)
from atp_unlock_tracker.chain.results import ReadResult, settle
from atp_unlock_tracker.chain.retry import RetryError, retry_async, with_retry

__all__ = [
    "ContractReadError",
    "ContractReader",
    "ContractReaderError",
    "MulticallContractReader",
    "RPCError",
    "ReadResult",
    "RetryError",
    "ViewFunction",
    "retry_async",
    "settle",
    "with_retry",
]
