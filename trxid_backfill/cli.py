"""
cli.py
``fill_trx_data``: fill in the missing trx_id rows of hive_trxid_block_num.

Usage:
  python scripts/fill_trx_data.py
  python scripts/fill_trx_data.py --env-file .env --process-step 50 --search-step 5000
  python scripts/fill_trx_data.py --dry-run

Exit codes: 0 done, 1 bad configuration or unreachable/unreadable storage,
2 storage write failure or blocks still failing after the last wave.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

import structlog

from trxid_backfill.config import LOG_FORMATS, BackfillConfig
from trxid_backfill.errors import (
    ConfigurationError,
    RetriesExhaustedError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from trxid_backfill.ingestion.block_fetcher import HiveBlockFetcher
from trxid_backfill.models.records import BackfillReport
from trxid_backfill.storage.gateway import TrxIdGateway, connect
from trxid_backfill.transform.batch_coordinator import BatchCoordinator
from trxid_backfill.transform.range_reconciler import RangeReconciler

log = structlog.get_logger(__name__)

EXIT_OK         = 0
EXIT_FATAL      = 1
EXIT_INCOMPLETE = 2

DRY_RUN_PREVIEW = 20


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="fill_trx_data",
        description="This command will fill in the missing trx_id data.",
    )
    p.add_argument("--env-file",        default=None, help="dotenv file with API_URL, PG_DSN, ...")
    p.add_argument("--api-url",         default=None)
    p.add_argument("--pg-dsn",          default=None)
    p.add_argument("--process-step",    type=int, default=None, help="concurrent fetches per chunk")
    p.add_argument("--search-step",     type=int, default=None, help="block numbers per reconciliation window")
    p.add_argument("--max-retry-waves", type=int, default=None, help="0 retries until every block succeeds")
    p.add_argument("--log-level",       default=None)
    p.add_argument("--log-format",      default=None, choices=LOG_FORMATS)
    p.add_argument("--create-table",    action="store_true", help="create hive_trxid_block_num if missing")
    p.add_argument("--dry-run",         action="store_true", help="report missing blocks only")
    return p.parse_args(argv)


def configure_logging(level: str = "INFO", fmt: str = "console"):
    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        cache_logger_on_first_use=False,
    )


def load_config(args, environ=None) -> BackfillConfig:
    env = dict(os.environ if environ is None else environ)
    if args.api_url:
        env["API_URL"] = args.api_url
    if args.pg_dsn:
        env["PG_DSN"] = args.pg_dsn
    config = BackfillConfig.from_env(env, env_file=args.env_file)
    return config.with_overrides(**_flag_overrides(args))


def _flag_overrides(args) -> dict:
    return {
        "process_step":    args.process_step,
        "search_step":     args.search_step,
        "max_retry_waves": args.max_retry_waves,
        "log_level":       args.log_level.upper() if args.log_level else None,
        "log_format":      args.log_format,
    }


async def run_backfill(
    config: BackfillConfig,
    gateway: TrxIdGateway,
    fetcher=None,
    dry_run: bool = False,
) -> BackfillReport:
    """
    Reconcile the stored range once, then backfill every missing block.

    ``fetcher`` defaults to a HiveBlockFetcher on ``config.api_url`` that is
    closed when the run ends.
    """
    latest = gateway.latest_block_num()
    log.info("backfill.latest_block", latest_block_num=latest)

    missing = RangeReconciler(gateway, window_size=config.search_step).find_missing(latest)
    report  = BackfillReport(latest_block_num=latest, missing_count=len(missing), dry_run=dry_run)
    if dry_run:
        log.info("backfill.dry_run", missing=len(missing), first_missing=missing[:DRY_RUN_PREVIEW])
        return report

    owns_fetcher = fetcher is None
    if owns_fetcher:
        fetcher = HiveBlockFetcher(
            config.api_url,
            timeout=config.http_timeout,
            max_connections=config.process_step,
        )

    coordinator = BatchCoordinator(
        fetcher,
        gateway,
        chunk_size=config.process_step,
        max_waves=config.max_retry_waves,
        backoff_min=config.retry_backoff_min,
        backoff_max=config.retry_backoff_max,
    )
    try:
        await coordinator.run(missing)
    except RetriesExhaustedError as exc:
        report.failed_blocks = exc.failed_blocks
    finally:
        result = coordinator.result
        report.blocks_fetched  = result.blocks_fetched
        report.records_written = result.records_written
        report.waves           = result.waves
        report.dropped_blocks  = list(result.dropped_blocks)
        if owns_fetcher:
            await fetcher.aclose()
    return report


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging()

    try:
        config = load_config(args)
    except ConfigurationError as exc:
        log.error("config.invalid", error=str(exc))
        return EXIT_FATAL
    configure_logging(config.log_level, config.log_format)

    try:
        engine = connect(config.pg_dsn)
    except StorageConnectionError as exc:
        log.error("storage.unavailable", error=str(exc))
        return EXIT_FATAL

    gateway = TrxIdGateway(engine, batch_size=config.insert_batch_size)
    try:
        if args.create_table:
            gateway.ensure_table()
        report = asyncio.run(run_backfill(config, gateway, dry_run=args.dry_run))
    except StorageReadError as exc:
        log.error("backfill.read_failed", error=str(exc))
        return EXIT_FATAL
    except StorageWriteError as exc:
        log.error("backfill.write_failed", error=str(exc), from_block=exc.first_block, rows=exc.rows)
        return EXIT_INCOMPLETE
    finally:
        engine.dispose()

    if report.dropped_blocks:
        log.warning("backfill.dropped_blocks", blocks=report.dropped_blocks)
    if not report.complete:
        log.error("backfill.incomplete", failed_blocks=report.failed_blocks, **report.as_log_fields())
        return EXIT_INCOMPLETE

    log.info("backfill.complete", **report.as_log_fields())
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
