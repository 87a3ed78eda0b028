"""Command line entry point: ``python -m krc20_mirror <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from krc20_mirror.config import ConfigurationError, Settings, get_settings
from krc20_mirror.ingestor.retry import UpstreamError
from krc20_mirror.service import SyncService
from krc20_mirror.sync.engine import ConcurrencyConflict, TickerSyncError

logger = logging.getLogger("krc20_mirror")

EXIT_OK = 0
EXIT_FAILURE = 1


async def run_service(settings: Settings) -> int:
    service = SyncService(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, service.request_stop)

    await service.run()
    return EXIT_OK


async def run_full_sync(settings: Settings, *, historical: bool | None) -> int:
    service = SyncService(settings)
    try:
        result = await service.engine.run_full_pass(historical=historical)
    except (UpstreamError, ConcurrencyConflict) as e:
        logger.error("Full sync failed: %s", e)
        return EXIT_FAILURE
    finally:
        await service.close()

    print(
        f"Synced {result.tokens_synced} tokens ({len(result.tokens_failed)} failed), "
        f"{result.transactions_upserted} transactions, {result.holders_synced} holders; "
        f"evicted {result.holders_evicted} holders in {result.duration_seconds:.1f}s"
    )
    return EXIT_OK


async def run_ticker_sync(settings: Settings, tick: str, *, historical: bool | None) -> int:
    service = SyncService(settings)
    try:
        result = await service.engine.run_ticker_pass(tick, historical=historical)
    except (UpstreamError, TickerSyncError, ConcurrencyConflict) as e:
        logger.error("Sync of %s failed: %s", tick, e)
        return EXIT_FAILURE
    finally:
        await service.close()

    print(
        f"Synced {tick}: {result.transactions_upserted} transactions in "
        f"{result.transaction_pages} pages, {result.holders_synced} holders"
    )
    return EXIT_OK


async def run_price_sample(settings: Settings) -> int:
    service = SyncService(settings)
    try:
        result = await service.sampler.sample_once()
    except UpstreamError as e:
        logger.error("Price sample failed: %s", e)
        return EXIT_FAILURE
    finally:
        await service.close()

    print(f"Stored {result.quotes} price snapshots ({result.placeholders_created} new tokens)")
    return EXIT_OK


async def run_init_db(settings: Settings) -> int:
    service = SyncService(settings)
    try:
        await service.init_schema()
    finally:
        await service.close()
    print("Database schema initialized")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="krc20-mirror",
        description="Mirror KRC20 token state from the Kasplex indexer into a local database",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the hourly scheduler and price sampler until stopped")

    sync_parser = subparsers.add_parser("sync", help="Run one full pass")
    sync_parser.add_argument(
        "--historical",
        action="store_true",
        default=None,
        help="Walk every transaction page instead of stopping at known operations",
    )

    ticker_parser = subparsers.add_parser("sync-ticker", help="Run one pass for a single ticker")
    ticker_parser.add_argument("tick", help="Token ticker, e.g. NACHO")
    ticker_parser.add_argument(
        "--historical",
        action="store_true",
        default=None,
        help="Walk every transaction page instead of stopping at known operations",
    )

    subparsers.add_parser("sample-prices", help="Store one floor-price snapshot")
    subparsers.add_parser("init-db", help="Create database tables")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_FAILURE

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        return asyncio.run(run_service(settings))
    if args.command == "sync":
        return asyncio.run(run_full_sync(settings, historical=args.historical))
    if args.command == "sync-ticker":
        return asyncio.run(run_ticker_sync(settings, args.tick, historical=args.historical))
    if args.command == "sample-prices":
        return asyncio.run(run_price_sample(settings))
    if args.command == "init-db":
        return asyncio.run(run_init_db(settings))

    parser.print_help()
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
