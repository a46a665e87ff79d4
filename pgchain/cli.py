# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain command line.

Configuration comes from the environment (see pgchain.env). Command
results are printed to stdout as JSON; logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog

from pgchain.backup import perform_full_backup, perform_incremental_backup, plan_restore, restore_backup
from pgchain.chains import find_orphans, list_chains, purge_orphans, quarantine_metadata
from pgchain.chains.schema import parse_timestamp
from pgchain.config import BackupConfig
from pgchain.core import initialize_backup_state, shutdown_backup_state
from pgchain.env import create_config_from_env
from pgchain.exceptions import PGChainError
from pgchain.scheduler import run_cleanup_now, start_scheduler

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog output to stderr at the given level."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _target_time(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"invalid ISO 8601 timestamp: {value!r}"
        ) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgchain",
        description="PostgreSQL full/incremental backup chain manager.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("full", help="Take a full backup and start a new chain.")
    sub.add_parser("incremental", help="Take an incremental backup on the latest chain.")
    sub.add_parser("cleanup", help="Delete chains beyond the retention count.")

    restore = sub.add_parser("restore", help="Restore a chain into a data directory.")
    restore.add_argument("--chain-id", help="Chain to restore (latest when omitted).")
    restore.add_argument(
        "--target-time",
        type=_target_time,
        help="ISO 8601 point in time; incrementals after it are not applied.",
    )
    restore.add_argument("--target-dir", type=Path, help="Destination data directory.")
    restore.add_argument(
        "--plan",
        action="store_true",
        help="Only print the backups that would be restored.",
    )

    sub.add_parser("chains", help="List chains in the metadata document.")

    orphans = sub.add_parser("orphans", help="List storage artifacts no chain references.")
    orphans.add_argument("--purge", action="store_true", help="Delete orphans past the grace period.")
    orphans.add_argument(
        "--grace-hours",
        type=float,
        default=6.0,
        help="Only purge orphans older than this many hours (default 6).",
    )

    sub.add_parser("quarantine", help="Move a corrupt metadata document aside.")
    sub.add_parser("schedule", help="Run the full, incremental and cleanup schedules.")

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_command(args: argparse.Namespace, config: BackupConfig) -> int:
    state = await initialize_backup_state(config)
    try:
        if args.command == "full":
            result = await perform_full_backup(config, state)
            _emit({"chain_id": result.chain_id, "backup_path": result.backup_path})

        elif args.command == "incremental":
            result = await perform_incremental_backup(config, state)
            _emit({"chain_id": result.chain_id, "backup_path": result.backup_path})

        elif args.command == "cleanup":
            _emit({"deleted_chain_ids": await run_cleanup_now(config, state)})

        elif args.command == "restore":
            target_time = args.target_time
            if args.plan:
                plan = await plan_restore(config, state, args.chain_id, target_time)
                _emit({"chain_id": plan.chain_id, "backup_paths": plan.backup_paths})
            else:
                result = await restore_backup(
                    config, state, args.chain_id, target_time, args.target_dir
                )
                _emit(
                    {
                        "chain_id": result.chain_id,
                        "target_dir": str(result.target_dir),
                        "backup_ids": result.backup_ids,
                        "combined": result.combined,
                    }
                )

        elif args.command == "chains":
            chains = await list_chains(state["metadata_path"])
            _emit([chain.to_dict() for chain in chains])

        elif args.command == "orphans":
            if args.purge:
                purged = await purge_orphans(
                    state["metadata_path"],
                    state["storage"],
                    grace_period=timedelta(hours=args.grace_hours),
                    lock_timeout=config.lock_timeout_seconds,
                )
                _emit({"purged": purged})
            else:
                _emit({"orphans": sorted(await find_orphans(state["metadata_path"], state["storage"]))})

        elif args.command == "quarantine":
            moved = await quarantine_metadata(state["metadata_path"])
            _emit({"quarantined_to": str(moved) if moved else None})

        elif args.command == "schedule":
            await _run_scheduler(config, state)

    finally:
        await shutdown_backup_state(state)
    return 0


async def _run_scheduler(config: BackupConfig, state) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)

    scheduler = start_scheduler(config, state)
    logger.info("scheduler_running", storage_type=config.storage_type.value)
    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.json_logs)

    try:
        config = create_config_from_env()
    except PGChainError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run_command(args, config))
    except PGChainError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
