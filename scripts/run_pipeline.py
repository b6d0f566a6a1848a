#!/usr/bin/env python3
"""Run the telemetry ingestion pipeline until interrupted.

Configuration comes from ``FLEET_*`` environment variables; command-line
flags override the most common ones.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyfleet import FleetConfig, FleetError, TrackingService  # noqa: E402

_LOG = logging.getLogger("pyfleet.run_pipeline")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Consume location, status and event streams into the tracking state.",
    )
    parser.add_argument(
        "--brokers",
        help="Comma-separated broker list (overrides FLEET_BROKERS).",
    )
    parser.add_argument(
        "--store",
        help="History store path (overrides FLEET_STORE_PATH).",
    )
    parser.add_argument(
        "--stats-interval",
        type=float,
        default=60.0,
        help="Log ingestion counters every N seconds (0 = never).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level.",
    )
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.brokers:
        overrides["brokers"] = tuple(part.strip() for part in args.brokers.split(",") if part.strip())
    if args.store:
        overrides["store_path"] = args.store
    config = FleetConfig.from_env(**overrides)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    async with TrackingService(config) as service:
        results = await service.start()
        if not any(results.values()):
            _LOG.error("No stream could connect; exiting")
            return 2

        while not stop_event.is_set():
            timeout = args.stats_interval if args.stats_interval > 0 else None
            try:
                await asyncio.wait_for(stop_event.wait(), timeout)
            except TimeoutError:
                stats = service.pipeline.stats
                _LOG.info(
                    "accepted=%d duplicates=%d rejected=%d cache_failures=%d states=%s",
                    stats.accepted,
                    stats.duplicates,
                    stats.rejected,
                    stats.cache_failures,
                    {stream: str(state) for stream, state in service.states().items()},
                )
        _LOG.info("Shutting down")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except FleetError as exc:
        print(f"[pipeline] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(_main())
