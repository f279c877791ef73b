"""CLI entry point for staged incremental loads.

Usage:
    python -m staged_load init CONFIG
    python -m staged_load run CONFIG [--sync NAME ...] [--upper-bound ISO]
    python -m staged_load status CONFIG [--stale-hours H]
    python -m staged_load history CONFIG [--sync NAME] [--limit N] [--json]
    python -m staged_load reset CONFIG --sync NAME [--truncate-target]
    python -m staged_load abandon CONFIG RUN_ID [--reason TEXT]

Exit codes:
    0  success
    1  a run failed, or the command could not be carried out
    2  ``status`` found open lineage entries older than --stale-hours
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from datetime import timedelta
from typing import Any, List, Optional, Sequence

import duckdb

from staged_load.lib.config_loader import SyncConfig, load_config
from staged_load.lib.cutoff import CutoffStore
from staged_load.lib.env import load_env_file
from staged_load.lib.errors import SyncError
from staged_load.lib.lineage import LineageEntry, LineageRecorder
from staged_load.lib.models import quote_ident
from staged_load.lib.observability import setup_logging
from staged_load.lib.orchestrator import RunResult, run_many
from staged_load.lib.resilience import RetryConfig, retry_operation
from staged_load.lib.time_utils import parse_timestamp
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger("staged_load")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_STALE = 2


def open_warehouse(config: SyncConfig) -> Warehouse:
    """Open the configured warehouse, waiting out a briefly held file lock."""
    warehouse = retry_operation(
        config.open_warehouse,
        RetryConfig(max_attempts=3, backoff_seconds=0.5),
        f"open warehouse {config.warehouse}",
        retry_on=lambda e: isinstance(e, duckdb.IOException),
    )
    warehouse.ensure_control_tables()
    return warehouse


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(sep=" ")
    return str(value)


def print_result(result: RunResult) -> None:
    """Print a run result in a readable format."""
    print()
    print("=" * 60)
    print(f"Sync: {result.sync} ({result.source} -> {result.target})")
    print("=" * 60)
    print(f"Status:  {'SUCCESS' if result.succeeded else 'FAILED'} ({result.state.value})")
    if result.run_id:
        print(f"Run id:  {result.run_id}")
    print(f"Window:  [{_fmt(result.lower_bound)}, {_fmt(result.upper_bound)})")
    print(
        f"Rows:    {result.staged} staged, {result.inserted} inserted, "
        f"{result.updated} updated, {result.unchanged} unchanged"
    )
    print(f"Cutoff:  {_fmt(result.watermark_before)} -> {_fmt(result.watermark_after)}")
    if result.phase_seconds:
        timings = ", ".join(f"{k} {v:.2f}s" for k, v in result.phase_seconds.items())
        print(f"Timing:  {timings}")
    if result.error is not None:
        print(f"Error:   {result.error}")
    print("=" * 60)


def _print_entries(entries: Sequence[LineageEntry]) -> None:
    header = f"{'run id':<36}  {'status':<9}  {'started':<19}  {'ins':>6} {'upd':>6} {'unch':>6}  pair"
    print(header)
    print("-" * len(header))
    for e in entries:
        started = e.started_at.strftime("%Y-%m-%d %H:%M:%S") if e.started_at else "-"
        print(
            f"{e.run_id:<36}  {e.status:<9}  {started:<19}  "
            f"{_fmt(e.rows_inserted):>6} {_fmt(e.rows_updated):>6} {_fmt(e.rows_unchanged):>6}  "
            f"{e.source} -> {e.target}"
        )
        if e.error_message:
            print(f"{'':<38}{e.error_message}")


# -- commands ----------------------------------------------------------


def cmd_init(config: SyncConfig, args: argparse.Namespace) -> int:
    with open_warehouse(config):
        pass
    print(f"Control tables ready in {config.warehouse}")
    for sync in config.syncs:
        print(f"  {sync.name}: {sync.pair}")
    return EXIT_OK


def cmd_run(config: SyncConfig, args: argparse.Namespace) -> int:
    syncs = config.select(args.sync)
    if args.keep_staging:
        syncs = [dataclasses.replace(s, keep_staging=True) for s in syncs]

    upper_bound = parse_timestamp(args.upper_bound) if args.upper_bound else None
    retry_config = RetryConfig(max_attempts=args.retries + 1) if args.retries else RetryConfig.none()

    with open_warehouse(config) as warehouse:
        results = run_many(
            warehouse,
            syncs,
            max_workers=args.workers,
            retry_config=retry_config,
            upper_bound=upper_bound,
            timeout=args.timeout,
        )

    for result in results:
        print_result(result)

    failed = [r for r in results if not r.succeeded]
    if failed:
        logger.error("%d of %d syncs failed", len(failed), len(results))
        return EXIT_FAILED
    return EXIT_OK


def cmd_status(config: SyncConfig, args: argparse.Namespace) -> int:
    with open_warehouse(config) as warehouse:
        cutoffs = CutoffStore(warehouse)
        lineage = LineageRecorder(warehouse)

        print(f"Warehouse: {config.warehouse}")
        print()
        print(f"{'sync':<24}  {'cutoff':<26}  {'age (h)':>8}  pair")
        for sync in config.syncs:
            cutoff = cutoffs.get(sync.source.name, sync.target)
            age = cutoffs.age_hours(sync.source.name, sync.target)
            age_text = f"{age:.1f}" if age is not None else "-"
            print(f"{sync.name:<24}  {_fmt(cutoff):<26}  {age_text:>8}  {sync.pair}")

        open_entries = lineage.open_entries()
        print()
        if open_entries:
            print(f"Open lineage entries ({len(open_entries)}):")
            _print_entries(open_entries)
        else:
            print("No open lineage entries")

        if args.stale_hours is not None:
            stale = lineage.open_entries(older_than=timedelta(hours=args.stale_hours))
            if stale:
                logger.warning(
                    "%d lineage entries open for more than %sh: %s",
                    len(stale),
                    args.stale_hours,
                    ", ".join(e.run_id for e in stale),
                )
                return EXIT_STALE
    return EXIT_OK


def cmd_history(config: SyncConfig, args: argparse.Namespace) -> int:
    source = target = None
    if args.sync:
        sync = config.get(args.sync)
        source, target = sync.source.name, sync.target

    with open_warehouse(config) as warehouse:
        entries = LineageRecorder(warehouse).history(source, target, limit=args.limit)

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2, default=str))
    elif entries:
        _print_entries(entries)
    else:
        print("No lineage entries")
    return EXIT_OK


def cmd_reset(config: SyncConfig, args: argparse.Namespace) -> int:
    sync = config.get(args.sync)
    source, target = sync.source.name, sync.target

    with open_warehouse(config) as warehouse:
        lineage = LineageRecorder(warehouse)
        open_ids = [
            e.run_id for e in lineage.open_entries() if (e.source, e.target) == (source, target)
        ]
        if open_ids:
            print(f"Refusing to reset {sync.pair}: open runs {', '.join(open_ids)}")
            return EXIT_FAILED

        with warehouse.transaction():
            existed = CutoffStore(warehouse).reset(source, target)
            if args.truncate_target and warehouse.table_exists(target):
                warehouse.execute(f"DELETE FROM {quote_ident(target)}")
                logger.warning("Truncated target %s", target)

    if existed:
        print(f"Cutoff of {sync.pair} reset; the next run performs a full backfill")
    else:
        print(f"{sync.pair} had no cutoff; the next run performs a full backfill")
    return EXIT_OK


def cmd_abandon(config: SyncConfig, args: argparse.Namespace) -> int:
    with open_warehouse(config) as warehouse:
        entry = LineageRecorder(warehouse).abandon(args.run_id, args.reason)
    print(f"Abandoned run {entry.run_id} ({entry.source} -> {entry.target})")
    return EXIT_OK


COMMANDS = {
    "init": cmd_init,
    "run": cmd_run,
    "status": cmd_status,
    "history": cmd_history,
    "reset": cmd_reset,
    "abandon": cmd_abandon,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="staged-load",
        description="Watermark-based staged incremental loads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create the cutoff and lineage tables
    staged-load init ./order_details.yaml

    # Load everything changed before a fixed instant
    staged-load run ./order_details.yaml --upper-bound 2025-09-17T00:00:00

    # Alert on runs that never closed
    staged-load status ./order_details.yaml --stale-hours 6

    # Close a crashed run so the pair can run again
    staged-load abandon ./order_details.yaml 6f1c... --reason "worker killed"
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument("--log-file", help="Write logs to a file in addition to console")
    parser.add_argument("--env-file", help="Load environment variables from this .env file")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create control tables")
    p.add_argument("config", help="Path to the YAML configuration")

    p = sub.add_parser("run", help="Run syncs")
    p.add_argument("config", help="Path to the YAML configuration")
    p.add_argument("--sync", action="append", help="Sync to run (repeatable; default all)")
    p.add_argument("--upper-bound", help="Exclusive upper bound of the change window (ISO)")
    p.add_argument("--timeout", type=float, help="Cancel a run after this many seconds")
    p.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Re-run a sync this many times after a transient failure",
    )
    p.add_argument("--workers", type=int, default=4, help="Syncs run in parallel (default: 4)")
    p.add_argument(
        "--keep-staging",
        action="store_true",
        help="Keep staging tables after the run (for diagnosis)",
    )

    p = sub.add_parser("status", help="Show cutoffs and open runs")
    p.add_argument("config", help="Path to the YAML configuration")
    p.add_argument(
        "--stale-hours",
        type=float,
        help="Exit with code 2 if runs have been open longer than this",
    )

    p = sub.add_parser("history", help="Show lineage history")
    p.add_argument("config", help="Path to the YAML configuration")
    p.add_argument("--sync", help="Only this sync")
    p.add_argument("--limit", type=int, default=20, help="Entries to show (default: 20)")
    p.add_argument("--json", action="store_true", help="Print JSON")

    p = sub.add_parser("reset", help="Reset a cutoff to force a full backfill")
    p.add_argument("config", help="Path to the YAML configuration")
    p.add_argument("--sync", required=True, help="Sync to reset")
    p.add_argument(
        "--truncate-target",
        action="store_true",
        help="Also delete every row of the target table",
    )

    p = sub.add_parser("abandon", help="Close an orphaned open run as failed")
    p.add_argument("config", help="Path to the YAML configuration")
    p.add_argument("run_id", help="Lineage key of the open run")
    p.add_argument("--reason", default="abandoned by operator", help="Recorded error message")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        if args.retries < 0:
            parser.error("--retries cannot be negative")
        if args.workers < 1:
            parser.error("--workers must be at least 1")
        if args.timeout is not None and args.timeout <= 0:
            parser.error("--timeout must be positive")
        if args.upper_bound:
            try:
                parse_timestamp(args.upper_bound)
            except ValueError:
                parser.error(f"--upper-bound is not an ISO timestamp: {args.upper_bound}")

    setup_logging(
        verbose=args.verbose,
        json_format=args.json_logs,
        log_file=args.log_file,
    )

    try:
        if args.env_file:
            load_env_file(args.env_file)
        else:
            load_env_file()
        config = load_config(args.config)
        return COMMANDS[args.command](config, args)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130

    except (SyncError, FileNotFoundError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"\nError: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
