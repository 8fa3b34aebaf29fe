#!/usr/bin/env python3
"""Sync OANDA candles into a local database.

Usage:
    # All account instruments, daily/weekly/monthly, into ./oanda.db
    candlesync

    # Whitelisted instruments (prefix match), daily only, practice account
    candlesync --tickers eur_usd,xau_ --granularity D --environment practice

    # Re-download full history into Postgres with 4 workers
    candlesync --db postgresql://user@localhost/market --full --workers 4

Credentials are read from OANDA_ACCOUNT_ID / OANDA_ACCESS_TOKEN unless
given on the command line.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from candlesync import __version__
from candlesync.config import (
    SyncConfig,
    dedupe_granularities,
    load_credentials,
    parse_dt,
    parse_tickers,
    resolve_database_url,
)
from candlesync.errors import ConfigError, FetchError, PersistError
from candlesync.market_data.oanda_client import (
    DEFAULT_BATCH_SIZE,
    MAX_BATCH_SIZE,
    OANDA_BASE_URLS,
    OandaClient,
)
from candlesync.market_data.retry import RequestThrottle, RetryPolicy
from candlesync.storage import SqlCandleStore, StoreConfig
from candlesync.sync import SyncOrchestrator
from candlesync.types import ALL_GRANULARITIES, Granularity, JobStatus, SyncSummary


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_JOB_FAILURE = 1
EXIT_CONFIG_ERROR = 2

_STATUS_MARKS = {
    JobStatus.SUCCEEDED: "✓",
    JobStatus.PARTIALLY_FAILED: "~",
    JobStatus.FAILED: "✗",
    JobStatus.CANCELLED: "-",
}


def _granularity_arg(value: str) -> Granularity:
    try:
        return Granularity.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="candlesync",
        description="Fetch OANDA daily/weekly/monthly candles and upsert them into a database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-d",
        "--db",
        help="SQLite file or SQLAlchemy URL (default: $DATABASE_URL, else oanda.db)",
    )
    parser.add_argument(
        "-g",
        "--granularity",
        action="append",
        type=_granularity_arg,
        help="Granularity to sync: D, W or M (repeatable, default: all)",
    )
    parser.add_argument("--oanda-account-id", help="OANDA account id (overrides OANDA_ACCOUNT_ID)")
    parser.add_argument("--oanda-access-token", help="OANDA access token (overrides OANDA_ACCESS_TOKEN)")
    parser.add_argument(
        "--tickers",
        help="Comma-separated instrument whitelist, matched as case-insensitive prefixes (e.g. eur_usd,xau_usd)",
    )
    parser.add_argument(
        "--environment",
        choices=sorted(OANDA_BASE_URLS.keys()),
        default="live",
        help="OANDA environment (default: live)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Candles per request, 1..{MAX_BATCH_SIZE} (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument(
        "--history-start",
        help="ISO date/datetime where a full-history fetch begins (default: 2000-01-01)",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Ignore stored candles and fetch the full history again",
    )
    parser.add_argument("--workers", type=int, default=1, help="Jobs to run in parallel (default: 1)")
    parser.add_argument(
        "--requests-per-second",
        type=float,
        default=100.0,
        help="Request rate cap shared by all workers (default: 100)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=6,
        help="Maximum attempts per page request (default: 6)",
    )
    parser.add_argument(
        "--initial-backoff-seconds",
        type=float,
        default=0.5,
        help="Initial backoff delay in seconds (default: 0.5)",
    )
    parser.add_argument(
        "--max-backoff-seconds",
        type=float,
        default=8.0,
        help="Maximum backoff delay in seconds (backoff doubles each retry up to this cap) (default: 8.0)",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=float,
        default=0.0,
        help="Maximum random jitter in seconds added to backoff delay (default: 0.0)",
    )
    parser.add_argument(
        "--max-candles",
        type=int,
        help="Keep only the newest N candles per instrument/granularity",
    )
    parser.add_argument(
        "--complete-only",
        action="store_true",
        help="Do not store candles whose period has not elapsed yet",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser


def _build_retry_policy(parser: argparse.ArgumentParser, args: argparse.Namespace) -> RetryPolicy:
    if args.max_retries <= 0:
        parser.error("--max-retries must be > 0")
    if args.initial_backoff_seconds < 0:
        parser.error("--initial-backoff-seconds must be >= 0")
    if args.max_backoff_seconds < 0:
        parser.error("--max-backoff-seconds must be >= 0")
    if args.initial_backoff_seconds > args.max_backoff_seconds:
        parser.error("--initial-backoff-seconds must be <= --max-backoff-seconds")
    if args.jitter_seconds < 0:
        parser.error("--jitter-seconds must be >= 0")

    return RetryPolicy(
        max_retries=args.max_retries,
        initial_backoff_seconds=args.initial_backoff_seconds,
        max_backoff_seconds=args.max_backoff_seconds,
        jitter_seconds=args.jitter_seconds,
    )


def print_summary(summary: SyncSummary) -> None:
    for r in summary.results:
        mark = _STATUS_MARKS.get(r.status, "?")
        line = f"{mark} {r.label} {r.status.value} fetched={r.candles_fetched} written={r.candles_written}"
        if r.dropped_records:
            line += f" dropped={r.dropped_records}"
        if r.error:
            line += f" error={r.error}"
        print(line)

    print("=" * 60)
    print("Candle sync summary")
    print(f"  Total jobs: {len(summary.results)}")
    print(f"  Succeeded: {summary.count(JobStatus.SUCCEEDED)}")
    print(f"  Partially failed: {summary.count(JobStatus.PARTIALLY_FAILED)}")
    print(f"  Failed: {summary.count(JobStatus.FAILED)}")
    print(f"  Cancelled: {summary.count(JobStatus.CANCELLED)}")
    print(f"  Candles written: {summary.candles_written}")
    if summary.aborted:
        print("  Aborted: credentials were rejected by the provider")
    print("=" * 60)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    retry = _build_retry_policy(parser, args)
    if args.max_candles is not None and args.max_candles <= 0:
        parser.error("--max-candles must be > 0")

    try:
        credentials = load_credentials(
            account_id=args.oanda_account_id,
            access_token=args.oanda_access_token,
        )
        config = SyncConfig(
            granularities=dedupe_granularities(args.granularity or ALL_GRANULARITIES),
            tickers=parse_tickers(args.tickers),
            environment=args.environment,
            batch_size=args.batch_size,
            resume=not args.full,
            workers=args.workers,
            requests_per_second=args.requests_per_second,
            retry=retry,
            **({"history_start": parse_dt(args.history_start)} if args.history_start else {}),
        )
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ValueError as exc:
        print(f"ERROR: invalid --history-start: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    store = SqlCandleStore(
        config=StoreConfig(
            database_url=resolve_database_url(args.db),
            max_candles_per_series=args.max_candles,
            complete_only=args.complete_only,
        )
    )
    client = OandaClient(
        credentials=credentials,
        environment=config.environment,
        retry_policy=config.retry,
        throttle=RequestThrottle(rate_per_second=config.requests_per_second),
        batch_size=config.batch_size,
        history_start=config.history_start,
    )

    logger.info(
        "Starting candle sync (environment=%s, granularities=%s, resume=%s)",
        config.environment,
        ",".join(g.value for g in config.granularities),
        config.resume,
    )
    try:
        store.ensure_schema()
        orchestrator = SyncOrchestrator(client=client, store=store, config=config)
        summary = orchestrator.sync()
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (FetchError, PersistError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_JOB_FAILURE
    finally:
        client.close()
        store.close()

    print_summary(summary)
    return summary.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
