# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain FastAPI Integration - Admin routes and lifespan for FastAPI apps.

This module provides:
- Lifespan management (startup/shutdown, optional scheduler)
- Protected admin endpoints for backups, cleanup, chains and restore plans
- Health checks
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pgchain.backup import BackupResult, plan_restore
from pgchain.chains import delete_chain, find_orphans, get_chain, list_chains
from pgchain.chains.schema import format_timestamp
from pgchain.config import BackupConfig
from pgchain.core import BackupState, get_status, initialize_backup_state, shutdown_backup_state
from pgchain.exceptions import (
    ChainConflictError,
    ChainNotFoundError,
    MetadataCorruptError,
    MetadataLockError,
    PGChainError,
    RestoreError,
)
from pgchain.scheduler import (
    run_cleanup_now,
    run_full_backup_now,
    run_incremental_backup_now,
    start_scheduler,
)

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the PGCHAIN_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("PGCHAIN_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="PGCHAIN_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: PGChainError) -> HTTPException:
    if isinstance(error, ChainNotFoundError):
        status = 404
    elif isinstance(error, RestoreError):
        # Only raised by restore planning here: nothing to restore
        status = 404
    elif isinstance(error, ChainConflictError):
        status = 409
    elif isinstance(error, MetadataLockError):
        status = 503
    else:
        status = 500
    return HTTPException(
        status_code=status,
        detail={"error": type(error).__name__, "message": error.message, "details": error.details},
    )


def _backup_payload(result: BackupResult) -> dict:
    return {
        "kind": result.kind,
        "chain_id": result.chain_id,
        "backup_id": result.backup_id,
        "backup_path": result.backup_path,
        "manifest_path": result.manifest_path,
        "parent_manifest_path": result.parent_manifest_path,
        "started_at": format_timestamp(result.started_at),
        "completed_at": format_timestamp(result.completed_at),
        "duration_seconds": result.duration_seconds,
    }


def register_pgchain_routes(
    app: FastAPI,
    config: BackupConfig,
    state: BackupState,
    prefix: str = "/admin/pgchain",
) -> None:
    """
    Register pgchain admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.
    """

    @app.post(f"{prefix}/backups/full", dependencies=[Depends(verify_api_key)])
    async def trigger_full_backup() -> dict:
        try:
            result = await run_full_backup_now(config, state)
        except PGChainError as e:
            raise _http_error(e) from e
        return _backup_payload(result)

    @app.post(f"{prefix}/backups/incremental", dependencies=[Depends(verify_api_key)])
    async def trigger_incremental_backup() -> dict:
        """Incremental backup; becomes a full backup when no chain exists."""
        try:
            result = await run_incremental_backup_now(config, state)
        except PGChainError as e:
            raise _http_error(e) from e
        return _backup_payload(result)

    @app.post(f"{prefix}/cleanup", dependencies=[Depends(verify_api_key)])
    async def trigger_cleanup() -> dict:
        try:
            deleted = await run_cleanup_now(config, state)
        except PGChainError as e:
            raise _http_error(e) from e
        return {"deleted_chain_ids": deleted, "retention_count": config.retention_count}

    @app.get(f"{prefix}/chains", dependencies=[Depends(verify_api_key)])
    async def get_chains() -> list:
        try:
            chains = await list_chains(state["metadata_path"])
        except PGChainError as e:
            raise _http_error(e) from e
        return [chain.to_dict() for chain in chains]

    @app.get(f"{prefix}/chains/{{chain_id}}", dependencies=[Depends(verify_api_key)])
    async def get_single_chain(chain_id: str) -> dict:
        try:
            chain = await get_chain(state["metadata_path"], chain_id)
        except PGChainError as e:
            raise _http_error(e) from e
        if chain is None:
            raise _http_error(ChainNotFoundError(chain_id))
        return chain.to_dict()

    @app.delete(f"{prefix}/chains/{{chain_id}}", dependencies=[Depends(verify_api_key)])
    async def remove_chain(chain_id: str) -> dict:
        try:
            await delete_chain(
                state["metadata_path"],
                state["storage"],
                chain_id,
                lock_timeout=config.lock_timeout_seconds,
            )
        except PGChainError as e:
            raise _http_error(e) from e
        state["total_chains_deleted"] += 1
        return {"deleted": True, "chain_id": chain_id}

    @app.get(f"{prefix}/restore/plan", dependencies=[Depends(verify_api_key)])
    async def get_restore_plan(
        chain_id: str | None = None,
        target_time: datetime | None = None,
    ) -> dict:
        """
        Records a restore would use, without downloading anything.

        Args:
            chain_id: Chain to restore (latest when omitted)
            target_time: ISO 8601 point in time (whole chain when omitted)
        """
        try:
            plan = await plan_restore(config, state, chain_id, target_time)
        except PGChainError as e:
            raise _http_error(e) from e
        return {
            "chain_id": plan.chain_id,
            "target_time": format_timestamp(plan.target_time) if plan.target_time else None,
            "records": [
                {"kind": r.kind, **r.to_dict()} for r in plan.records
            ],
        }

    @app.get(f"{prefix}/orphans", dependencies=[Depends(verify_api_key)])
    async def get_orphans() -> dict:
        try:
            orphans = await find_orphans(state["metadata_path"], state["storage"])
        except PGChainError as e:
            raise _http_error(e) from e
        return {"orphans": sorted(orphans)}

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_backup_status() -> dict:
        try:
            status = await get_status(config, state)
        except PGChainError as e:
            raise _http_error(e) from e
        return {
            "storage_type": status.storage_type,
            "chain_count": status.chain_count,
            "latest_chain_id": status.latest_chain_id,
            "latest_full_at": (
                format_timestamp(status.latest_full_at) if status.latest_full_at else None
            ),
            "latest_incremental_count": status.latest_incremental_count,
            "last_backup_at": (
                format_timestamp(status.last_backup_at) if status.last_backup_at else None
            ),
            "last_restore_at": (
                format_timestamp(status.last_restore_at) if status.last_restore_at else None
            ),
            "total_full_backups": status.total_full_backups,
            "total_incremental_backups": status.total_incremental_backups,
            "total_restores": status.total_restores,
            "total_chains_deleted": status.total_chains_deleted,
            "last_error": status.last_error,
            "retention_count": config.retention_count,
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the metadata document parses and storage is reachable.
        """
        metadata_ok = True
        metadata_error = None
        try:
            await list_chains(state["metadata_path"])
        except MetadataCorruptError as e:
            metadata_ok = False
            metadata_error = str(e)

        storage_ok = True
        storage_error = None
        try:
            await state["storage"].list("manifests")
        except Exception as e:
            storage_ok = False
            storage_error = str(e)

        status = "healthy"
        if not metadata_ok or not storage_ok:
            status = "degraded"
        if not metadata_ok and not storage_ok:
            status = "unhealthy"

        return {
            "status": status,
            "metadata_readable": metadata_ok,
            "metadata_error": metadata_error,
            "storage_reachable": storage_ok,
            "storage_error": storage_error,
            "storage": state["storage"].name,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return {
            "database": config.connection_string(redact=True),
            "storage_type": config.storage_type.value,
            "storage_path": str(config.storage_path),
            "s3_bucket": config.s3_bucket,
            "s3_prefix": config.s3_prefix,
            "retention_count": config.retention_count,
            "full_backup_schedule": config.full_backup_schedule,
            "incremental_backup_schedule": config.incremental_backup_schedule,
            "cleanup_schedule": config.cleanup_schedule,
        }


@asynccontextmanager
async def pgchain_lifespan(
    app: FastAPI,
    config: BackupConfig,
    prefix: str = "/admin/pgchain",
    schedule: bool = True,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: pgchain_lifespan(app, config))

    Args:
        app: FastAPI application
        config: pgchain configuration
        prefix: URL prefix for admin endpoints
        schedule: Start the backup scheduler alongside the app
    """
    logger.info("pgchain_lifespan_starting", storage_type=config.storage_type.value)

    state = await initialize_backup_state(config)
    app.state.pgchain_state = state
    app.state.pgchain_config = config

    register_pgchain_routes(app, config, state, prefix)

    scheduler = start_scheduler(config, state) if schedule else None

    logger.info("pgchain_lifespan_started")

    try:
        yield
    finally:
        logger.info("pgchain_lifespan_stopping")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await shutdown_backup_state(state)
        logger.info("pgchain_lifespan_stopped")


def get_pgchain_state(app: FastAPI) -> BackupState:
    """
    Get pgchain state from a FastAPI app.

    Raises:
        RuntimeError: If pgchain not initialized
    """
    state = getattr(app.state, "pgchain_state", None)
    if not state:
        raise RuntimeError("pgchain not initialized. Use pgchain_lifespan first.")
    return state
