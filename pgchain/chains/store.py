# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Chain Store - Durable record of every backup chain.

The store is one JSON document (see pgchain.chains.schema). Readers load
the whole document; writers hold the metadata lock, load, mutate in
memory, and atomically replace the file. Records are only ever appended;
a chain leaves the document only through delete_chain().
"""

import os
import re
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Dict, List, Set

import aiofiles
import aiofiles.os
import structlog

from pgchain.chains.lock import metadata_lock
from pgchain.chains.schema import (
    BackupRecord,
    Chain,
    ChainDocument,
    FullRecord,
    IncrementalRecord,
    parse_document,
    parse_timestamp,
    serialize_document,
)
from pgchain.exceptions import (
    ChainConflictError,
    ChainNotFoundError,
    ChainStoreError,
    MetadataCorruptError,
    StorageError,
)
from pgchain.storage.base import Storage

logger = structlog.get_logger()

DEFAULT_LOCK_TIMEOUT = 30.0

# Roots in the storage namespace that hold chain artifacts
ARTIFACT_ROOTS = ("backups", "manifests")

_ARTIFACT_TIME_RE = re.compile(r"(\d{8}_\d{6})")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    from ulid import ULID

    return str(ULID())


# ============================================================================
# Document IO
# ============================================================================

async def load_document(metadata_path: Path) -> ChainDocument:
    """
    Load the metadata document.

    A missing file is an empty document. A file that cannot be parsed
    raises MetadataCorruptError and is left untouched.
    """
    metadata_path = Path(metadata_path)
    if not await aiofiles.os.path.exists(metadata_path):
        return ChainDocument()

    try:
        async with aiofiles.open(metadata_path, "r", encoding="utf-8") as f:
            raw = await f.read()
    except OSError as e:
        raise ChainStoreError(
            f"Failed to read chain metadata: {e}",
            details={"metadata_path": str(metadata_path)},
        ) from e

    try:
        return parse_document(raw, metadata_path)
    except MetadataCorruptError as e:
        logger.error(
            "chain_metadata_corrupt",
            metadata_path=str(metadata_path),
            reason=e.details.get("reason"),
        )
        raise


async def save_document(metadata_path: Path, document: ChainDocument) -> None:
    """Write the document atomically (temp file in the same directory, then rename)."""
    metadata_path = Path(metadata_path)
    document.revision += 1
    document.updated_at = _utcnow()
    temp_path = metadata_path.with_name(f".{metadata_path.name}.{os.getpid()}.tmp")

    try:
        await aiofiles.os.makedirs(metadata_path.parent, exist_ok=True)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(serialize_document(document))
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(temp_path, metadata_path)
    except OSError as e:
        raise ChainStoreError(
            f"Failed to write chain metadata: {e}",
            details={"metadata_path": str(metadata_path)},
        ) from e

    logger.debug(
        "chain_metadata_saved",
        metadata_path=str(metadata_path),
        revision=document.revision,
        chains=len(document.chains),
    )


async def quarantine_metadata(metadata_path: Path) -> Path | None:
    """
    Move a (corrupt) metadata document aside so a new history can start.

    This is an explicit operator action; nothing calls it automatically.

    Returns:
        The quarantined path, or None if there was no document
    """
    metadata_path = Path(metadata_path)
    if not await aiofiles.os.path.exists(metadata_path):
        return None
    stamp = _utcnow().strftime("%Y%m%d_%H%M%S")
    target = metadata_path.with_name(f"{metadata_path.name}.corrupt-{stamp}")
    await aiofiles.os.replace(metadata_path, target)
    logger.warning(
        "chain_metadata_quarantined",
        metadata_path=str(metadata_path),
        quarantined_to=str(target),
    )
    return target


# ============================================================================
# Registration
# ============================================================================

async def register_full_backup(
    metadata_path: Path,
    backup_path: str,
    manifest_path: str,
    *,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> FullRecord:
    """
    Start a new chain from a full backup.

    Args:
        metadata_path: Path to the metadata document
        backup_path: Storage path of the backup payload
        manifest_path: Storage path of the backup manifest

    Returns:
        The new full record (carrying the new chain_id)
    """
    async with metadata_lock(metadata_path, lock_timeout, command="register_full"):
        document = await load_document(metadata_path)
        record = FullRecord(
            chain_id=_new_id(),
            backup_id=_new_id(),
            timestamp=_utcnow(),
            backup_path=backup_path,
            manifest_path=manifest_path,
        )
        document.chains.append(Chain(full=record))
        await save_document(metadata_path, document)

    logger.info(
        "full_backup_registered",
        chain_id=record.chain_id,
        backup_id=record.backup_id,
        backup_path=backup_path,
    )
    return record


async def register_incremental_backup(
    metadata_path: Path,
    chain_id: str,
    backup_path: str,
    manifest_path: str,
    parent_manifest_path: str,
    *,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> IncrementalRecord:
    """
    Append an incremental to an existing chain.

    The parent manifest must still be the chain tip; otherwise another
    incremental was registered in between and ChainConflictError is
    raised. The timestamp is never earlier than the previous record's.

    Raises:
        ChainNotFoundError: If chain_id is not in the document
        ChainConflictError: If parent_manifest_path is not the chain tip
    """
    async with metadata_lock(metadata_path, lock_timeout, command="register_incremental"):
        document = await load_document(metadata_path)
        chain = document.find(chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)

        tip = chain.tip
        if tip.manifest_path != parent_manifest_path:
            raise ChainConflictError(
                "Parent manifest is no longer the tip of the chain",
                details={
                    "chain_id": chain_id,
                    "parent_manifest_path": parent_manifest_path,
                    "tip_manifest_path": tip.manifest_path,
                },
            )

        record = IncrementalRecord(
            backup_id=_new_id(),
            timestamp=max(_utcnow(), tip.timestamp),
            backup_path=backup_path,
            manifest_path=manifest_path,
            parent_manifest_path=parent_manifest_path,
        )
        chain.incrementals.append(record)
        await save_document(metadata_path, document)

    logger.info(
        "incremental_backup_registered",
        chain_id=chain_id,
        backup_id=record.backup_id,
        backup_path=backup_path,
        position=len(chain.incrementals),
    )
    return record


# ============================================================================
# Queries
# ============================================================================

async def list_chains(metadata_path: Path) -> List[Chain]:
    """All chains, oldest full backup first."""
    document = await load_document(metadata_path)
    return sorted(document.chains, key=lambda c: c.timestamp)


async def get_chain(metadata_path: Path, chain_id: str) -> Chain | None:
    document = await load_document(metadata_path)
    return document.find(chain_id)


async def get_latest_chain(metadata_path: Path) -> Chain | None:
    """The chain whose full backup is newest, ignoring chains being deleted."""
    document = await load_document(metadata_path)
    live = [c for c in document.chains if not c.pending_deletion]
    if not live:
        return None
    return max(live, key=lambda c: c.timestamp)


async def get_latest_manifest(metadata_path: Path, chain_id: str) -> str:
    """
    Manifest of the chain tip: the last incremental's, or the full backup's.

    Raises:
        ChainNotFoundError: If chain_id is not in the document
    """
    chain = await get_chain(metadata_path, chain_id)
    if chain is None:
        raise ChainNotFoundError(chain_id)
    return chain.tip.manifest_path


async def get_restore_chain(
    metadata_path: Path,
    chain_id: str,
    target_time: datetime | None = None,
) -> List[BackupRecord]:
    """
    Records needed to restore chain_id up to target_time.

    The full record always comes first. With a target_time, incrementals
    are taken in order while their timestamp is <= target_time; the first
    later one and everything after it are excluded. Without a target_time
    every incremental is included.

    Returns:
        [full, inc1, inc2, ...], or [] when the chain does not exist or
        is being deleted
    """
    chain = await get_chain(metadata_path, chain_id)
    if chain is None:
        return []
    if chain.pending_deletion:
        logger.warning("restore_chain_pending_deletion", chain_id=chain_id)
        return []

    selected: List[BackupRecord] = [chain.full]
    if target_time is None:
        selected.extend(chain.incrementals)
        return selected

    cutoff = parse_timestamp(target_time)
    for incremental in chain.incrementals:
        if incremental.timestamp > cutoff:
            break
        selected.append(incremental)
    return selected


# ============================================================================
# Retention and deletion
# ============================================================================

async def delete_chain(
    metadata_path: Path,
    storage: Storage,
    chain_id: str,
    *,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> bool:
    """
    Delete a chain's artifacts and then its metadata entry.

    Every artifact is deleted independently. If any deletion fails the
    chain is kept, marked pending_deletion, and StorageError is raised;
    re-running delete_chain finishes the job because storage deletes are
    idempotent.

    Raises:
        ChainNotFoundError: If chain_id is not in the document
        StorageError: If one or more artifacts could not be deleted
    """
    async with metadata_lock(metadata_path, lock_timeout, command="delete_chain"):
        document = await load_document(metadata_path)
        chain = document.find(chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)
        await _delete_chain_locked(metadata_path, storage, document, chain)
    return True


async def cleanup_old_chains(
    metadata_path: Path,
    storage: Storage,
    retention_count: int,
    *,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> List[str]:
    """
    Keep the newest retention_count chains and delete the rest, oldest first.

    Returns:
        IDs of the deleted chains
    """
    if retention_count < 0:
        raise ValueError(f"retention_count must be >= 0, got {retention_count}")

    deleted: List[str] = []
    async with metadata_lock(metadata_path, lock_timeout, command="cleanup"):
        document = await load_document(metadata_path)
        excess = len(document.chains) - retention_count
        if excess <= 0:
            logger.info(
                "chain_cleanup_skipped",
                chains=len(document.chains),
                retention_count=retention_count,
            )
            return deleted

        oldest = sorted(document.chains, key=lambda c: c.timestamp)[:excess]
        for chain in oldest:
            await _delete_chain_locked(metadata_path, storage, document, chain)
            deleted.append(chain.chain_id)

    logger.info(
        "chain_cleanup_complete",
        deleted=len(deleted),
        retention_count=retention_count,
    )
    return deleted


async def _delete_chain_locked(
    metadata_path: Path,
    storage: Storage,
    document: ChainDocument,
    chain: Chain,
) -> None:
    """Delete one chain; caller holds the metadata lock."""
    failures: Dict[str, str] = {}
    for path in chain.artifact_paths():
        try:
            await storage.delete(path)
        except StorageError as e:
            failures[path] = str(e)
            logger.error(
                "chain_artifact_delete_failed",
                chain_id=chain.chain_id,
                path=path,
                error=str(e),
            )

    if failures:
        chain.pending_deletion = True
        await save_document(metadata_path, document)
        raise StorageError(
            f"Failed to delete {len(failures)} artifact(s) of chain {chain.chain_id}; "
            "chain marked pending_deletion",
            operation="delete_chain",
            path=chain.chain_id,
            details={"failed": failures},
        )

    document.chains.remove(chain)
    await save_document(metadata_path, document)
    logger.info(
        "chain_deleted",
        chain_id=chain.chain_id,
        artifacts=len(chain.artifact_paths()),
    )


# ============================================================================
# Reconciliation
# ============================================================================

def _artifact_root(key: str) -> str:
    """'backups/full_x/base/1' -> 'backups/full_x'; 'manifests/m' -> 'manifests/m'."""
    parts = key.split("/")
    return "/".join(parts[:2])


def _is_referenced(key: str, referenced: Set[str]) -> bool:
    for path in referenced:
        if key == path or key.startswith(path.rstrip("/") + "/"):
            return True
    return False


async def find_orphans(metadata_path: Path, storage: Storage) -> Set[str]:
    """
    Storage keys under backups/ and manifests/ that no chain references.

    These are left behind when a backup failed between upload and
    registration and its cleanup could not run.
    """
    document = await load_document(metadata_path)
    referenced = {p for chain in document.chains for p in chain.artifact_paths()}

    keys: Set[str] = set()
    for root in ARTIFACT_ROOTS:
        keys |= await storage.list(root)

    orphans = {key for key in keys if not _is_referenced(key, referenced)}
    logger.info("orphan_scan_complete", scanned=len(keys), orphans=len(orphans))
    return orphans


def _artifact_time(root: str) -> datetime | None:
    match = _ARTIFACT_TIME_RE.search(root)
    if not match:
        return None
    return datetime.strptime(match.group(1), "%Y%m%d_%H%M%S").replace(tzinfo=UTC)


async def purge_orphans(
    metadata_path: Path,
    storage: Storage,
    *,
    grace_period: timedelta = timedelta(hours=6),
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> List[str]:
    """
    Delete orphaned artifacts older than grace_period.

    Artifacts are only purged when their name carries a timestamp (as
    every artifact this package writes does) and that timestamp is older
    than the grace period, so an upload still in flight is never removed.

    Returns:
        The artifact roots that were deleted
    """
    purged: List[str] = []
    cutoff = _utcnow() - grace_period
    async with metadata_lock(metadata_path, lock_timeout, command="purge_orphans"):
        roots = sorted({_artifact_root(key) for key in await find_orphans(metadata_path, storage)})
        for root in roots:
            created = _artifact_time(root)
            if created is None or created > cutoff:
                logger.debug("orphan_purge_skipped", path=root)
                continue
            await storage.delete(root)
            purged.append(root)
            logger.info("orphan_purged", path=root)
    return purged
