# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Core - Runtime state shared by the backup and restore operations.

There is no process-wide singleton: callers build a BackupState with
initialize_backup_state() and pass (config, state) to every operation.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypedDict

import structlog

from pgchain.config import BackupConfig, StorageType
from pgchain.storage import Storage, create_storage

logger = structlog.get_logger()


class BackupState(TypedDict):
    """Runtime state for backup chain operations."""

    metadata_path: Path
    storage: Storage
    s3_session: Any  # aiobotocore session, None for local storage
    last_backup_at: datetime | None
    last_restore_at: datetime | None
    total_full_backups: int
    total_incremental_backups: int
    total_restores: int
    total_chains_deleted: int
    last_error: str | None


@dataclass
class BackupStatus:
    """Snapshot of the chain store and run counters."""

    storage_type: str
    chain_count: int
    latest_chain_id: str | None
    latest_full_at: datetime | None
    latest_incremental_count: int
    last_backup_at: datetime | None
    last_restore_at: datetime | None
    total_full_backups: int
    total_incremental_backups: int
    total_restores: int
    total_chains_deleted: int
    last_error: str | None


async def initialize_backup_state(
    config: BackupConfig,
    storage: Storage | None = None,
) -> BackupState:
    """
    Initialize runtime state for backup operations.

    Creates the local storage root and builds the storage backend.

    Args:
        config: pgchain configuration
        storage: Optional pre-built backend (used by tests and embedders)

    Returns:
        Initialized BackupState dictionary
    """
    config.storage_path.mkdir(parents=True, exist_ok=True)
    config.metadata_path.parent.mkdir(parents=True, exist_ok=True)

    session = None
    if storage is None:
        if config.storage_type == StorageType.S3:
            from aiobotocore.session import get_session

            session = get_session()
        storage = create_storage(config, session)

    logger.info(
        "backup_state_initialized",
        storage=storage.name,
        metadata_path=str(config.metadata_path),
    )

    return BackupState(
        metadata_path=config.metadata_path,
        storage=storage,
        s3_session=session,
        last_backup_at=None,
        last_restore_at=None,
        total_full_backups=0,
        total_incremental_backups=0,
        total_restores=0,
        total_chains_deleted=0,
        last_error=None,
    )


async def get_status(config: BackupConfig, state: BackupState) -> BackupStatus:
    """Current chain store summary plus this process's counters."""
    from pgchain.chains import get_latest_chain, list_chains

    chains = await list_chains(state["metadata_path"])
    latest = await get_latest_chain(state["metadata_path"])

    return BackupStatus(
        storage_type=config.storage_type.value,
        chain_count=len(chains),
        latest_chain_id=latest.chain_id if latest else None,
        latest_full_at=latest.timestamp if latest else None,
        latest_incremental_count=len(latest.incrementals) if latest else 0,
        last_backup_at=state["last_backup_at"],
        last_restore_at=state["last_restore_at"],
        total_full_backups=state["total_full_backups"],
        total_incremental_backups=state["total_incremental_backups"],
        total_restores=state["total_restores"],
        total_chains_deleted=state["total_chains_deleted"],
        last_error=state["last_error"],
    )


async def shutdown_backup_state(state: BackupState) -> None:
    """Release the storage backend."""
    try:
        await state["storage"].close()
    except Exception as e:
        logger.warning("storage_close_failed", error=str(e))

    logger.info("backup_state_shutdown_complete")
