#!/usr/bin/env python3
"""
DOM Replay - Orderbook analytics and historical replay in the terminal.

Usage:
    python -m dom_replay.main XBT/USD --tick-size 1 --levels 20

    Replay the last hour at 2x:
    python -m dom_replay.main ETH/USD --mode replay --from 2024-05-01T12:00:00Z --speed 2

Controls:
    q - Quit
    t - Cycle tick size
    d - Cycle depth range
    space - Play/pause (replay)
    left/right - Jump 10 seconds (replay)
    , / . - Step one snapshot (replay)
    s - Cycle playback speed (replay)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from .config import (
    DEFAULT_API_URL,
    DEFAULT_SYMBOL,
    DEPTH_RANGES,
    IMBALANCE_DEPTHS,
    PLAYBACK_SPEEDS,
    TICK_SIZES,
    EngineConfig,
)
from .types import Mode


async def main(
    symbol: str,
    api_url: str,
    mode: Mode,
    tick_size: float,
    levels: int,
    depth_range: float,
    imbalance_depth: int,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
    speed: float = 1.0,
) -> None:
    """Main entry point - runs data feed and UI concurrently."""

    # Import here to avoid slow startup for --help
    from .datafeed.backend_client import BackendClient
    from .engine.book_engine import BookEngine
    from .ui.dom_view import run_ui

    print(f"Starting DOM Replay for {symbol} ({mode.value})...")
    print(f"  Backend: {api_url}")
    print(f"  Tick size: {tick_size}")
    print(f"  Levels: {levels}")
    print()

    client = BackendClient(api_url)
    engine = BookEngine(symbol, mode=mode, config=EngineConfig(), history_source=client.history)

    async def run_feed() -> None:
        try:
            await client.run(engine)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logging.getLogger(__name__).exception(f"Feed error: {e}")

    feed_task = asyncio.create_task(run_feed())
    replay_task: Optional[asyncio.Task] = None

    if mode is Mode.REPLAY:
        engine.set_replay_speed(speed)
        replay_task = asyncio.create_task(engine.enter_replay(start_ms, end_ms))
    else:
        engine.start()

    try:
        # Run UI (blocks until quit)
        await run_ui(
            engine,
            tick_size=tick_size,
            depth=levels,
            depth_range_percent=depth_range,
            imbalance_depth=imbalance_depth,
        )
    finally:
        client.stop()
        engine.close()
        for task in (feed_task, replay_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


def _parse_time(value: str) -> int:
    from .datafeed.normalizer import parse_timestamp_ms

    timestamp_ms = parse_timestamp_ms(value)
    if timestamp_ms is None:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value!r}")
    return timestamp_ms


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="DOM Replay - Orderbook analytics with live and historical replay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m dom_replay.main XBT/USD
    python -m dom_replay.main ETH/USD --tick-size 0.1 --levels 30
    python -m dom_replay.main SOL/USD --mode replay --speed 4
        """
    )

    parser.add_argument(
        "symbol",
        nargs="?",
        default=DEFAULT_SYMBOL,
        help=f"Instrument as BASE/QUOTE (default: {DEFAULT_SYMBOL})"
    )

    parser.add_argument(
        "--api-url",
        default=DEFAULT_API_URL,
        help=f"Orderbook backend URL (default: {DEFAULT_API_URL})"
    )

    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.LIVE.value,
        help="live stream or historical replay (default: live)"
    )

    parser.add_argument(
        "--tick-size",
        type=float,
        choices=TICK_SIZES,
        default=1,
        help="Price bucket size for aggregation (default: 1)"
    )

    parser.add_argument(
        "--levels",
        type=int,
        default=20,
        help="Number of price levels per side (default: 20)"
    )

    parser.add_argument(
        "--depth-range",
        type=float,
        choices=DEPTH_RANGES,
        default=5,
        help="Max distance from mid in percent, 20 = no limit (default: 5)"
    )

    parser.add_argument(
        "--imbalance-depth",
        type=int,
        choices=IMBALANCE_DEPTHS,
        default=10,
        help="Levels per side used for the imbalance ratio (default: 10)"
    )

    parser.add_argument(
        "--from",
        dest="start",
        type=_parse_time,
        default=None,
        help="Replay start, RFC 3339 or epoch (default: 24h ago)"
    )

    parser.add_argument(
        "--to",
        dest="end",
        type=_parse_time,
        default=None,
        help="Replay end, RFC 3339 or epoch (default: now)"
    )

    parser.add_argument(
        "--speed",
        type=float,
        choices=PLAYBACK_SPEEDS,
        default=1.0,
        help="Replay playback speed (default: 1)"
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (default: WARNING)"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Run
    try:
        asyncio.run(main(
            args.symbol,
            args.api_url,
            Mode(args.mode),
            args.tick_size,
            args.levels,
            args.depth_range,
            args.imbalance_depth,
            start_ms=args.start,
            end_ms=args.end,
            speed=args.speed,
        ))
    except KeyboardInterrupt:
        print("\nShutdown requested.")
        sys.exit(0)


if __name__ == "__main__":
    cli()
