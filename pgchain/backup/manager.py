# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Backup Manager - Full and incremental backup operations.

Each operation runs pg_basebackup into scratch space, ships the payload
and manifest to storage, confirms both are present, and only then
registers the backup in the chain store. Anything uploaded by a failed
operation is removed again before the error propagates.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import structlog

from pgchain.backup.tools import artifact_stamp, run_tool, scratch_directory
from pgchain.chains import (
    get_latest_chain,
    get_latest_manifest,
    register_full_backup,
    register_incremental_backup,
)
from pgchain.config import BackupConfig
from pgchain.core import BackupState
from pgchain.exceptions import BackupError, StorageError
from pgchain.storage import Storage

logger = structlog.get_logger()

# File name pg_basebackup writes its manifest under inside the output directory
MANIFEST_FILENAME = "backup_manifest"


@dataclass
class BackupResult:
    """Result of a full or incremental backup."""

    kind: str  # "full" or "incremental"
    chain_id: str
    backup_id: str
    backup_path: str
    manifest_path: str
    parent_manifest_path: str | None
    started_at: datetime
    completed_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


def build_basebackup_command(
    config: BackupConfig,
    output_dir: Path,
    incremental_manifest: Path | None = None,
) -> List[str]:
    """
    pg_basebackup argv: plain format, streamed WAL, fast checkpoint.

    With incremental_manifest, the backup is taken relative to it.
    """
    argv = [
        config.pg_basebackup_path,
        "-D", str(output_dir),
        "-F", "p",
        "--wal-method=stream",
        "--checkpoint=fast",
        "--no-password",
    ]
    if incremental_manifest is not None:
        argv.append(f"--incremental={incremental_manifest}")
    return argv


async def perform_full_backup(config: BackupConfig, state: BackupState) -> BackupResult:
    """
    Take a full backup and start a new chain with it.

    Raises:
        BackupError: If pg_basebackup fails or artifacts cannot be shipped
    """
    started_at = datetime.now(UTC)
    stamp = artifact_stamp(started_at)
    backup_path = f"backups/full_{stamp}"
    manifest_path = f"manifests/backup_manifest_{stamp}"

    logger.info("full_backup_started", backup_path=backup_path)

    try:
        async with scratch_directory("pgchain_full_", config.scratch_path) as scratch:
            data_dir = scratch / "data"
            await _run_basebackup(config, data_dir)
            await _ship_artifacts(
                state["storage"], data_dir, backup_path, manifest_path
            )

        try:
            record = await register_full_backup(
                state["metadata_path"],
                backup_path,
                manifest_path,
                lock_timeout=config.lock_timeout_seconds,
            )
        except Exception:
            await _discard_artifacts(state["storage"], [backup_path, manifest_path])
            raise

    except Exception as e:
        state["last_error"] = str(e)
        logger.error("full_backup_failed", backup_path=backup_path, error=str(e))
        raise

    completed_at = datetime.now(UTC)
    state["last_backup_at"] = completed_at
    state["total_full_backups"] += 1

    result = BackupResult(
        kind="full",
        chain_id=record.chain_id,
        backup_id=record.backup_id,
        backup_path=backup_path,
        manifest_path=manifest_path,
        parent_manifest_path=None,
        started_at=started_at,
        completed_at=completed_at,
    )
    logger.info(
        "full_backup_completed",
        chain_id=result.chain_id,
        backup_path=backup_path,
        duration=result.duration_seconds,
    )
    return result


async def perform_incremental_backup(config: BackupConfig, state: BackupState) -> BackupResult:
    """
    Take an incremental backup against the tip of the latest chain.

    Raises:
        BackupError: If there is no chain yet, the parent manifest cannot
            be fetched, pg_basebackup fails, or artifacts cannot be shipped
        ChainConflictError: If another incremental was registered meanwhile
    """
    started_at = datetime.now(UTC)
    storage = state["storage"]

    try:
        chain = await get_latest_chain(state["metadata_path"])
        if chain is None:
            raise BackupError("No full backup found; take a full backup first")

        parent_manifest_path = await get_latest_manifest(state["metadata_path"], chain.chain_id)

        stamp = artifact_stamp(started_at)
        backup_path = f"backups/incremental_{stamp}"
        manifest_path = f"manifests/backup_manifest_{stamp}"

        logger.info(
            "incremental_backup_started",
            chain_id=chain.chain_id,
            backup_path=backup_path,
            parent_manifest_path=parent_manifest_path,
        )

        async with scratch_directory("pgchain_parent_", config.scratch_path) as manifest_dir:
            local_parent = manifest_dir / MANIFEST_FILENAME
            try:
                await storage.download(parent_manifest_path, local_parent)
            except StorageError as e:
                raise BackupError(
                    f"Failed to download parent manifest: {e}",
                    details={"parent_manifest_path": parent_manifest_path},
                ) from e

            async with scratch_directory("pgchain_incremental_", config.scratch_path) as scratch:
                data_dir = scratch / "data"
                await _run_basebackup(config, data_dir, incremental_manifest=local_parent)
                await _ship_artifacts(storage, data_dir, backup_path, manifest_path)

        try:
            record = await register_incremental_backup(
                state["metadata_path"],
                chain.chain_id,
                backup_path,
                manifest_path,
                parent_manifest_path,
                lock_timeout=config.lock_timeout_seconds,
            )
        except Exception:
            await _discard_artifacts(storage, [backup_path, manifest_path])
            raise

    except Exception as e:
        state["last_error"] = str(e)
        logger.error("incremental_backup_failed", error=str(e))
        raise

    completed_at = datetime.now(UTC)
    state["last_backup_at"] = completed_at
    state["total_incremental_backups"] += 1

    result = BackupResult(
        kind="incremental",
        chain_id=chain.chain_id,
        backup_id=record.backup_id,
        backup_path=backup_path,
        manifest_path=manifest_path,
        parent_manifest_path=parent_manifest_path,
        started_at=started_at,
        completed_at=completed_at,
    )
    logger.info(
        "incremental_backup_completed",
        chain_id=result.chain_id,
        backup_path=backup_path,
        duration=result.duration_seconds,
    )
    return result


async def _run_basebackup(
    config: BackupConfig,
    data_dir: Path,
    incremental_manifest: Path | None = None,
) -> None:
    argv = build_basebackup_command(config, data_dir, incremental_manifest)
    try:
        result = await run_tool(argv, env=config.pg_env())
    except OSError as e:
        raise BackupError(
            f"Failed to start pg_basebackup: {e}",
            details={"tool": config.pg_basebackup_path},
        ) from e

    if not result.success:
        raise BackupError(
            f"pg_basebackup failed with exit code {result.returncode}",
            details={"returncode": result.returncode, "output": result.output},
        )

    if not (data_dir / MANIFEST_FILENAME).is_file():
        raise BackupError(
            "pg_basebackup succeeded but wrote no backup manifest",
            details={"output_dir": str(data_dir), "output": result.output},
        )


async def _ship_artifacts(
    storage: Storage,
    data_dir: Path,
    backup_path: str,
    manifest_path: str,
) -> None:
    """Upload payload and manifest, then confirm both are present in storage."""
    try:
        await storage.upload(data_dir, backup_path)
        await storage.upload(data_dir / MANIFEST_FILENAME, manifest_path)
        missing = [p for p in (backup_path, manifest_path) if not await storage.exists(p)]
    except StorageError as e:
        await _discard_artifacts(storage, [backup_path, manifest_path])
        raise BackupError(
            f"Failed to upload backup artifacts: {e}",
            details={"backup_path": backup_path, "manifest_path": manifest_path},
        ) from e

    if missing:
        await _discard_artifacts(storage, [backup_path, manifest_path])
        raise BackupError(
            "Uploaded artifacts are not present in storage",
            details={"missing": missing},
        )

    logger.info(
        "backup_artifacts_uploaded",
        storage=storage.name,
        backup_path=backup_path,
        manifest_path=manifest_path,
    )


async def _discard_artifacts(storage: Storage, paths: List[str]) -> None:
    """Best-effort removal of artifacts from a failed operation."""
    for path in paths:
        try:
            await storage.delete(path)
        except StorageError as e:
            logger.warning(
                "orphaned_artifact_left",
                path=path,
                error=str(e),
                hint="run find_orphans()/purge_orphans() to reconcile",
            )
