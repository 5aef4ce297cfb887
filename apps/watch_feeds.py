#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import time
from typing import Any

from portfolio_stream.config import load_stream_config
from portfolio_stream.live.distributor import PortfolioDistributor, PriceStream
from portfolio_stream.runtime.state import ChangeKind, StateCell
from portfolio_stream.utils.logger import get_logger, init_logging, log_info


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch the live portfolio and price feeds.")
    parser.add_argument("--config", default=None, help="stream config JSON (default: configs/stream.json)")
    parser.add_argument("--logging-config", default=None, help="logging config JSON (default: configs/logging.json)")
    parser.add_argument("--mode", default=None, help="logging profile name")
    parser.add_argument("--run-id", default=None, help="run id for log context")
    parser.add_argument("--symbols", default="", help="comma-separated symbols for the price feed")
    parser.add_argument("--duration", type=float, default=None, help="seconds to run (default: until interrupted)")
    parser.add_argument("--no-bootstrap", action="store_true", help="skip the initial REST snapshot fetch")
    return parser.parse_args(argv)


async def watch(args: argparse.Namespace) -> None:
    logger = get_logger("apps.watch_feeds")
    config = load_stream_config(args.config)
    symbols = [s for s in args.symbols.split(",") if s.strip()]

    def on_status(cell: StateCell[Any], changes: frozenset[ChangeKind]) -> None:
        if ChangeKind.STATUS in changes:
            log_info(
                logger,
                "watch.status",
                feed=cell.name,
                state=cell.status.state.value,
                attempts=cell.status.attempts,
            )

    def on_portfolio(cell: StateCell[Any], changes: frozenset[ChangeKind]) -> None:
        if ChangeKind.VALUE in changes and cell.value is not None:
            snap = cell.value
            log_info(
                logger,
                "watch.portfolio",
                timestamp=snap.timestamp,
                total_value=snap.total_value,
                cash_balance=snap.cash_balance,
                n_positions=len(snap.positions),
            )

    def on_prices(cell: StateCell[Any], changes: frozenset[ChangeKind]) -> None:
        if ChangeKind.VALUE in changes and cell.value:
            log_info(
                logger,
                "watch.prices",
                prices={sym: tick.price for sym, tick in sorted(cell.value.items())},
            )

    portfolio = PortfolioDistributor(config=config)
    prices = PriceStream(config=config, symbols=symbols)
    for feed, listener in ((portfolio, on_portfolio), (prices, on_prices)):
        feed.subscribe(on_status)
        feed.subscribe(listener)

    log_info(
        logger,
        "watch.start",
        portfolio_url=config.portfolio_url,
        price_url=config.price_url,
        symbols=sorted(symbols),
        duration_s=args.duration,
    )
    with portfolio, prices:
        if not args.no_bootstrap:
            await portfolio.bootstrap()
        if args.duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(args.duration)
    log_info(logger, "watch.stop")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    run_id = args.run_id or f"watch_{int(time.time())}"
    init_logging(config_path=args.logging_config, run_id=run_id, mode=args.mode)
    try:
        asyncio.run(watch(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
