#!/usr/bin/env python
"""
Sync Job

Runs sync cycles against the configured remote backend outside the API
process, e.g. from cron on a machine that keeps the church's books.

Usage:
    python scripts/sync_job.py [--once | --loop] [--interval SECONDS]

Options:
    --once: Run a single pull-then-push cycle and exit (default)
    --loop: Keep syncing every --interval seconds until interrupted
    --interval: Seconds between cycles in loop mode (default: SYNC_INTERVAL_SECONDS)
"""
import asyncio
import sys
from argparse import ArgumentParser
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from churchbooks.config import Settings
from churchbooks.logging_config import setup_logging_from_settings
from churchbooks.models.sync import SyncReport
from churchbooks.services.finance_store import build_finance_store


def print_report(report: SyncReport) -> None:
    print("=" * 60)
    if report.skipped:
        print(f"Sync skipped at {report.started_at:%Y-%m-%d %H:%M:%S} (no signed-in user or remote unreachable)")
    else:
        print(f"Sync for user {report.principal} - {report.started_at:%Y-%m-%d %H:%M:%S}")
        for table, count in report.pulled.items():
            print(f"  Pulled {table}: {count}")
        print(f"  Pushed: {report.pushed}")
        print(f"  Discarded: {report.discarded}")
        print(f"  Failed: {report.failed}")
        if report.dropped_after_retries:
            print(f"  Dropped after retries: {report.dropped_after_retries}")
        if report.seeded_defaults:
            print(f"  Default categories seeded: {report.seeded_defaults}")
    for error in report.errors:
        print(f"  ERROR: {error}")
    print("=" * 60)


async def run_once(settings: Settings) -> SyncReport:
    finance_store = build_finance_store(settings)
    try:
        report = await finance_store.engine.sync()
        print_report(report)
        print(f"Pending changes left in queue: {finance_store.pending_count}")
        return report
    finally:
        await finance_store.remote.aclose()


async def run_loop(settings: Settings, interval: float) -> None:
    finance_store = build_finance_store(settings)
    finance_store.engine.on_sync(print_report)
    try:
        while True:
            await finance_store.connectivity.check()
            await finance_store.engine.sync()
            await asyncio.sleep(interval)
    finally:
        await finance_store.remote.aclose()


def main():
    parser = ArgumentParser(description="Sync the local books with the remote backend")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true', help='Run a single cycle (default)')
    mode.add_argument('--loop', action='store_true', help='Keep syncing until interrupted')

    parser.add_argument(
        '--interval',
        type=float,
        default=None,
        help='Seconds between cycles in loop mode'
    )

    args = parser.parse_args()

    settings = Settings.from_env()
    setup_logging_from_settings(settings)

    if not settings.remote_configured:
        print("SUPABASE_URL and SUPABASE_ANON_KEY must be set to sync")
        sys.exit(1)

    try:
        if args.loop:
            asyncio.run(run_loop(settings, args.interval or settings.sync_interval_seconds))
        else:
            asyncio.run(run_once(settings))
    except KeyboardInterrupt:
        print("Stopped.")


if __name__ == "__main__":
    main()
