"""Command-line entry point.

Usage:
    python -m atp_unlock_tracker refresh [--force]
    python -m atp_unlock_tracker inspect ADDRESS [--at MS]
    python -m atp_unlock_tracker schedule ADDRESS... [--start MS] [--end MS] [--points N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from atp_unlock_tracker.config import Settings, get_settings
from atp_unlock_tracker.discovery.fetcher import ATPFetchError
from atp_unlock_tracker.refresh import RefreshService, build_fetcher, build_reader
from atp_unlock_tracker.vesting.unlock import (
    compute_aggregate_unlock_stats,
    compute_unlock_series,
    now_ms,
)

logger = logging.getLogger("atp_unlock_tracker")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atp-unlock-tracker",
        description="Discover ATP vesting contracts and project their unlock schedules",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    refresh = sub.add_parser("refresh", help="Discover ATPs among token holders and cache results")
    refresh.add_argument("--force", action="store_true", help="Ignore the recent-refresh check")

    inspect = sub.add_parser("inspect", help="Fetch one ATP and its current unlock schedule")
    inspect.add_argument("address")
    inspect.add_argument("--at", type=int, default=None, help="Evaluation time (ms epoch)")

    schedule = sub.add_parser("schedule", help="Unlock time series across several ATPs")
    schedule.add_argument("addresses", nargs="+")
    schedule.add_argument("--start", type=int, default=None, help="Range start (ms epoch)")
    schedule.add_argument("--end", type=int, default=None, help="Range end (ms epoch)")
    schedule.add_argument("--points", type=int, default=100)
    return parser


def _emit(payload: object) -> None:
    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")


async def _run_refresh(settings: Settings, *, force: bool) -> int:
    async with RefreshService.from_settings(settings) as service:
        outcome = await service.refresh(force=force)
    _emit(outcome.to_dict())
    return 0


async def _run_inspect(settings: Settings, address: str, at: int | None) -> int:
    reader = build_reader(settings)
    try:
        record = await build_fetcher(settings, reader).fetch_atp_data(address)
    except ATPFetchError as e:
        logger.error("%s", e)
        return 1
    finally:
        await reader.aclose()

    if record is None:
        _emit({"address": address.lower(), "isATP": False})
        return 0
    _emit({"isATP": True, **record.to_dict(evaluation_time=at)})
    return 0


async def _run_schedule(
    settings: Settings,
    addresses: Sequence[str],
    *,
    start: int | None,
    end: int | None,
    points: int,
) -> int:
    reader = build_reader(settings)
    fetcher = build_fetcher(settings, reader)
    try:
        results = await asyncio.gather(
            *(fetcher.fetch_atp_data(a) for a in addresses), return_exceptions=True
        )
    finally:
        await reader.aclose()

    locks = []
    for address, result in zip(addresses, results, strict=True):
        if isinstance(result, Exception):
            logger.error("Skipping %s: %s", address, result)
        elif result is None:
            logger.warning("Skipping %s: not an ATP contract", address)
        elif (lock := result.effective_lock()) is not None:
            locks.append(lock)

    if not locks:
        logger.error("No unlock schedules to project")
        return 1

    range_start = start if start is not None else min(lock.start_time for lock in locks)
    range_end = end if end is not None else max(lock.full_unlock for lock in locks)
    series = compute_unlock_series(locks, range_start, range_end, points)
    _emit(
        {
            "stats": compute_aggregate_unlock_stats(locks, now_ms()).to_dict(),
            "points": [point.to_dict() for point in series],
        }
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    settings.validate_requirements(command=args.command)
    logger.debug("Settings: %s", settings.redacted_summary())

    if args.command == "refresh":
        return asyncio.run(_run_refresh(settings, force=args.force))
    if args.command == "inspect":
        return asyncio.run(_run_inspect(settings, args.address, args.at))
    return asyncio.run(
        _run_schedule(
            settings,
            args.addresses,
            start=args.start,
            end=args.end,
            points=args.points,
        )
    )


if __name__ == "__main__":
    sys.exit(main())
