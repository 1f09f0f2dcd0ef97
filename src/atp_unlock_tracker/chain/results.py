"""Settled outcome of a single contract read."""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ReadResult:
    """Either a value or the exception that prevented reading it."""

    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


async def settle(awaitable: Awaitable[Any]) -> ReadResult:
    """Await ``awaitable`` and capture its outcome instead of raising."""
    try:
        return ReadResult(value=await awaitable)
    except Exception as e:
        return ReadResult(error=e)
