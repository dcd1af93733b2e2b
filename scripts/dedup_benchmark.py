#!/usr/bin/env python3
"""Quick-and-dirty harness to measure request collapsing and cache hit rates."""

from __future__ import annotations

import argparse
import asyncio
import cProfile
import io
import pstats
import statistics
import sys
import time
from typing import Iterable

from cursor_query.cache import CacheStore
from cursor_query.config import CacheConfig
from cursor_query.fetcher import FetchCoordinator
from cursor_query.keys import build


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--iterations", type=int, default=5, help="Number of measured rounds"
    )
    parser.add_argument(
        "--keys", type=int, default=50, help="Distinct page keys per round"
    )
    parser.add_argument(
        "--callers",
        type=int,
        default=20,
        help="Concurrent loads issued for every key",
    )
    parser.add_argument(
        "--fake-delay",
        type=float,
        default=0.05,
        help="Seconds each synthetic fetch sleeps",
    )
    parser.add_argument(
        "--ttl-ms",
        type=int,
        default=0,
        help="Freshness window forwarded to CacheConfig",
    )
    parser.add_argument(
        "--invalidate",
        action="store_true",
        help="Invalidate the resource between rounds so every round refetches",
    )
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Wrap the run in cProfile and print the hottest functions",
    )
    parsed = parser.parse_args(list(argv) if argv is not None else None)
    if parsed.iterations < 1:
        parser.error("--iterations must be at least 1")
    if parsed.keys < 1 or parsed.callers < 1:
        parser.error("--keys and --callers must be at least 1")
    return parsed


async def _run_once(
    args: argparse.Namespace, coordinator: FetchCoordinator, iteration: int
) -> tuple[float, int]:
    calls = 0

    async def fake_fetch(params):
        nonlocal calls
        calls += 1
        await asyncio.sleep(max(0.0, args.fake_delay))
        return {"nodes": [params], "pageInfo": {"hasNextPage": False}}

    keys = [
        build("bench.list", {"first": 20, "after": f"c{index}"})
        for index in range(args.keys)
    ]
    start = time.perf_counter()
    await asyncio.gather(
        *(coordinator.load(key, fake_fetch) for key in keys for _ in range(args.callers))
    )
    elapsed = time.perf_counter() - start
    loads = args.keys * args.callers
    print(
        f"Iteration {iteration}: {elapsed:.3f}s loads={loads} fetches={calls} "
        f"entries={len(coordinator.store)}"
    )
    if args.invalidate:
        coordinator.store.invalidate("bench")
    return elapsed, calls


async def _main(args: argparse.Namespace) -> None:
    coordinator = FetchCoordinator(CacheStore(CacheConfig(ttl_ms=args.ttl_ms)))
    durations: list[float] = []
    fetches = 0
    for idx in range(1, args.iterations + 1):
        elapsed, calls = await _run_once(args, coordinator, idx)
        durations.append(elapsed)
        fetches += calls
    await coordinator.close()

    loads = args.iterations * args.keys * args.callers
    spread = statistics.pstdev(durations) if len(durations) > 1 else 0.0
    print(
        "\nSummary:\n"
        f"  average: {statistics.fmean(durations):.3f}s\n"
        f"  best:    {min(durations):.3f}s\n"
        f"  worst:   {max(durations):.3f}s\n"
        f"  stdev:   {spread:.3f}s\n"
        f"  loads:   {loads}\n"
        f"  fetches: {fetches} ({fetches / loads:.2%} of loads)\n"
    )


def _profiled_run(args: argparse.Namespace) -> None:
    profiler = cProfile.Profile()
    profiler.enable()
    asyncio.run(_main(args))
    profiler.disable()
    stream = io.StringIO()
    stats = pstats.Stats(profiler, stream=stream).sort_stats("cumulative")
    stats.print_stats(15)
    print("\nTop 15 functions by cumulative time:\n")
    print(stream.getvalue())


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    runner = (
        _profiled_run if args.profile else lambda parsed: asyncio.run(_main(parsed))
    )
    runner(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
