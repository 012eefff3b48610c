from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Sequence

from bitvavo_client.client import BitvavoClient
from bitvavo_client.config import load_settings
from bitvavo_client.errors import BitvavoError
from bitvavo_client.logging_setup import configure_logging
from bitvavo_client.models import Channel

LOGGER = logging.getLogger(__name__)

WATCH_CHANNELS = (
    Channel.TICKER.value,
    Channel.TICKER_24H.value,
    Channel.TRADES.value,
    Channel.CANDLES.value,
    Channel.BOOK.value,
)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bitvavo REST and streaming client",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("time", help="Print the exchange server time")
    commands.add_parser("markets", help="Print the market list")

    book = commands.add_parser("book", help="Print an order-book snapshot")
    book.add_argument("market", help="Market, e.g. BTC-EUR")
    book.add_argument(
        "--depth",
        type=int,
        default=None,
        help="Number of levels per side",
    )

    watch = commands.add_parser("watch", help="Stream a channel to stdout")
    watch.add_argument("channel", choices=WATCH_CHANNELS)
    watch.add_argument("market", help="Market, e.g. BTC-EUR")
    watch.add_argument(
        "--interval",
        type=str,
        default="1m",
        help="Candle interval for the candles channel (default: 1m)",
    )
    watch.add_argument(
        "--seconds",
        type=float,
        default=30.0,
        help="How long to stream before disconnecting (default: 30)",
    )
    return parser.parse_args(argv)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=None, sort_keys=True))


async def _watch(client: BitvavoClient, channel: str, market: str, interval: str, seconds: float) -> None:
    ws = client.websocket()
    await ws.connect()
    if channel == Channel.BOOK.value:
        await ws.subscribe_book(market, _print)
    elif channel == Channel.CANDLES.value:
        await ws.subscribe_candles(market, interval, _print)
    else:
        await ws.subscribe(channel, market, _print)
    LOGGER.info("watching %s %s for %.0fs", channel, market, seconds)
    await asyncio.sleep(seconds)
    await ws.aclose()


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.log_level, debugging=settings.debugging)

    async with BitvavoClient(settings) as client:
        if args.command == "watch":
            await _watch(client, args.channel, args.market, args.interval, args.seconds)
            return 0

        if args.command == "time":
            result = await client.time()
        elif args.command == "markets":
            result = await client.markets()
        else:
            options = {"depth": args.depth} if args.depth else None
            result = await client.book(args.market, options)

        if not result.ok:
            LOGGER.error("%s failed: %s", args.command, result.error)
            return 1
        _print(result.payload)
        LOGGER.info("rate limit remaining=%d", client.remaining_budget())
        return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except BitvavoError as exc:
        LOGGER.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
