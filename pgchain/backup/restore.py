# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Restore Manager - Point-in-time restore operations.

A restore selects the restore chain for a chain id and target time,
downloads each record into its own scratch directory, merges them with
pg_combinebackup into the target data directory, and then writes the
recovery configuration the server needs to replay archived WAL.
"""

import asyncio
import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import aiofiles
import structlog

from pgchain.backup.tools import run_tool, scratch_directory
from pgchain.chains import BackupRecord, get_latest_chain, get_restore_chain
from pgchain.chains.schema import format_timestamp, parse_timestamp
from pgchain.config import BackupConfig
from pgchain.core import BackupState
from pgchain.exceptions import RestoreError, StorageError

logger = structlog.get_logger()

RECOVERY_SIGNAL = "recovery.signal"
AUTO_CONF = "postgresql.auto.conf"


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    chain_id: str
    target_dir: Path
    target_time: datetime | None
    backup_ids: List[str]
    combined: bool
    started_at: datetime
    completed_at: datetime
    backup_paths: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class RestorePlan:
    """What a restore would fetch, without touching storage."""

    chain_id: str
    target_time: datetime | None
    records: List[BackupRecord]

    @property
    def backup_paths(self) -> List[str]:
        return [record.backup_path for record in self.records]


async def plan_restore(
    config: BackupConfig,
    state: BackupState,
    chain_id: str | None = None,
    target_time: datetime | str | None = None,
) -> RestorePlan:
    """
    Resolve the chain and records a restore would use.

    Raises:
        RestoreError: If no chain exists, or the chain yields no records
    """
    if target_time is not None:
        target_time = parse_timestamp(target_time)

    if chain_id is None:
        latest = await get_latest_chain(state["metadata_path"])
        if latest is None:
            raise RestoreError("No backup chain available to restore")
        chain_id = latest.chain_id

    records = await get_restore_chain(state["metadata_path"], chain_id, target_time)
    if not records:
        raise RestoreError(
            f"No restorable backups for chain {chain_id}",
            details={"chain_id": chain_id},
        )

    return RestorePlan(chain_id=chain_id, target_time=target_time, records=records)


async def restore_backup(
    config: BackupConfig,
    state: BackupState,
    chain_id: str | None = None,
    target_time: datetime | str | None = None,
    target_dir: Path | None = None,
) -> RestoreResult:
    """
    Restore a chain into target_dir.

    Args:
        config: pgchain configuration
        state: Runtime state
        chain_id: Chain to restore (latest chain when None)
        target_time: Point in time to restore to (whole chain when None)
        target_dir: Destination data directory (config.restore_path when None)

    Returns:
        RestoreResult describing what was restored

    Raises:
        RestoreError: If there is nothing to restore, the target directory
            is not empty, a download fails, or pg_combinebackup fails
    """
    started_at = datetime.now(UTC)

    try:
        plan = await plan_restore(config, state, chain_id, target_time)
        target = Path(target_dir) if target_dir is not None else config.restore_path
        _prepare_target(target)

        logger.info(
            "restore_started",
            chain_id=plan.chain_id,
            target_dir=str(target),
            target_time=format_timestamp(plan.target_time) if plan.target_time else None,
            records=len(plan.records),
        )

        combined = await _materialize(config, state, plan.records, target)
        await configure_recovery(target, plan.target_time, config.wal_restore_command())

    except Exception as e:
        state["last_error"] = str(e)
        logger.error("restore_failed", chain_id=chain_id, error=str(e))
        raise

    completed_at = datetime.now(UTC)
    state["last_restore_at"] = completed_at
    state["total_restores"] += 1

    result = RestoreResult(
        chain_id=plan.chain_id,
        target_dir=target,
        target_time=plan.target_time,
        backup_ids=[record.backup_id for record in plan.records],
        combined=combined,
        started_at=started_at,
        completed_at=completed_at,
        backup_paths=plan.backup_paths,
    )
    logger.info(
        "restore_completed",
        chain_id=result.chain_id,
        target_dir=str(target),
        combined=combined,
        duration=result.duration_seconds,
    )
    return result


def _prepare_target(target: Path) -> None:
    if target.exists() and not target.is_dir():
        raise RestoreError(
            f"Restore target is not a directory: {target}",
            details={"target_dir": str(target)},
        )
    target.mkdir(parents=True, exist_ok=True)
    if any(target.iterdir()):
        raise RestoreError(
            f"Restore target is not empty: {target}",
            details={"target_dir": str(target)},
        )


async def _download(state: BackupState, record: BackupRecord, destination: Path) -> None:
    try:
        await state["storage"].download(record.backup_path, destination)
    except StorageError as e:
        raise RestoreError(
            f"Failed to download {record.kind} backup {record.backup_path}: {e}",
            details={"backup_id": record.backup_id, "backup_path": record.backup_path},
        ) from e


async def _materialize(
    config: BackupConfig,
    state: BackupState,
    records: List[BackupRecord],
    target: Path,
) -> bool:
    """
    Populate target from the records. Returns True when pg_combinebackup ran.
    """
    full, incrementals = records[0], records[1:]

    async with scratch_directory("pgchain_restore_full_", config.scratch_path) as full_scratch:
        full_dir = full_scratch / "data"
        await _download(state, full, full_dir)

        if not incrementals:
            await asyncio.to_thread(shutil.copytree, full_dir, target, dirs_exist_ok=True)
            logger.info("full_backup_copied", backup_path=full.backup_path, target_dir=str(target))
            return False

        await _combine_with_incrementals(config, state, full_dir, incrementals, target)
        return True


async def _combine_with_incrementals(
    config: BackupConfig,
    state: BackupState,
    full_dir: Path,
    incrementals: List[BackupRecord],
    target: Path,
) -> None:
    async with scratch_directory("pgchain_restore_inc_", config.scratch_path) as inc_scratch:
        incremental_dirs: List[Path] = []
        for position, record in enumerate(incrementals, start=1):
            # One directory per incremental, numbered to keep chain order
            destination = inc_scratch / f"{position:04d}"
            await _download(state, record, destination)
            incremental_dirs.append(destination)

        argv = [
            config.pg_combinebackup_path,
            str(full_dir),
            *[str(d) for d in incremental_dirs],
            "-o", str(target),
        ]
        try:
            result = await run_tool(argv)
        except OSError as e:
            raise RestoreError(
                f"Failed to start pg_combinebackup: {e}",
                details={"tool": config.pg_combinebackup_path},
            ) from e

        if not result.success:
            raise RestoreError(
                f"pg_combinebackup failed with exit code {result.returncode}",
                details={"returncode": result.returncode, "output": result.output},
            )


async def configure_recovery(
    target_dir: Path,
    target_time: datetime | None,
    restore_command: str,
) -> None:
    """
    Write recovery.signal and append recovery settings to postgresql.auto.conf.

    With a target_time the server stops replay there and promotes.
    """
    target_dir = Path(target_dir)

    async with aiofiles.open(target_dir / RECOVERY_SIGNAL, "w") as f:
        await f.write("")

    restore_command = restore_command.replace("'", "''")
    lines = [
        "",
        f"# Recovery settings added by pgchain at {format_timestamp(datetime.now(UTC))}",
        f"restore_command = '{restore_command}'",
    ]
    if target_time is not None:
        lines.append(f"recovery_target_time = '{target_time.isoformat()}'")
        lines.append("recovery_target_action = 'promote'")

    async with aiofiles.open(target_dir / AUTO_CONF, "a") as f:
        await f.write("\n".join(lines) + "\n")

    logger.info(
        "recovery_configured",
        target_dir=str(target_dir),
        target_time=target_time.isoformat() if target_time else None,
    )
