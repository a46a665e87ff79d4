# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Scheduler - Cron-driven full, incremental and cleanup runs.

The run_*_now helpers are what the scheduled jobs call; they are also
the entry points for the CLI and the admin routes.
"""

from typing import List

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pgchain.backup import BackupResult, perform_full_backup, perform_incremental_backup
from pgchain.chains import cleanup_old_chains, get_latest_chain
from pgchain.config import BackupConfig
from pgchain.core import BackupState

logger = structlog.get_logger()

FULL_JOB_ID = "pgchain_full_backup"
INCREMENTAL_JOB_ID = "pgchain_incremental_backup"
CLEANUP_JOB_ID = "pgchain_cleanup"


async def run_full_backup_now(config: BackupConfig, state: BackupState) -> BackupResult:
    try:
        return await perform_full_backup(config, state)
    except Exception as e:
        logger.error("scheduled_full_backup_failed", error=str(e))
        raise


async def run_incremental_backup_now(config: BackupConfig, state: BackupState) -> BackupResult:
    """Incremental backup, or a full one when there is no chain to extend."""
    try:
        if await get_latest_chain(state["metadata_path"]) is None:
            logger.info("incremental_backup_promoted_to_full", reason="no_chain")
            return await perform_full_backup(config, state)
        return await perform_incremental_backup(config, state)
    except Exception as e:
        logger.error("scheduled_incremental_backup_failed", error=str(e))
        raise


async def run_cleanup_now(config: BackupConfig, state: BackupState) -> List[str]:
    try:
        deleted = await cleanup_old_chains(
            state["metadata_path"],
            state["storage"],
            config.retention_count,
            lock_timeout=config.lock_timeout_seconds,
        )
    except Exception as e:
        state["last_error"] = str(e)
        logger.error("scheduled_cleanup_failed", error=str(e))
        raise

    state["total_chains_deleted"] += len(deleted)
    return deleted


def _job(func, config: BackupConfig, state: BackupState):
    """Wrap a run_*_now helper so a failed run never stops the scheduler."""

    async def job() -> None:
        try:
            await func(config, state)
        except Exception as e:
            # The next trigger retries
            logger.warning("scheduled_job_will_retry", job=func.__name__, error=str(e))

    job.__name__ = func.__name__
    return job


def create_scheduler(config: BackupConfig, state: BackupState) -> AsyncIOScheduler:
    """
    Build an AsyncIOScheduler with the full, incremental and cleanup jobs.

    The scheduler is returned unstarted.
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    jobs = [
        (FULL_JOB_ID, run_full_backup_now, config.full_backup_schedule),
        (INCREMENTAL_JOB_ID, run_incremental_backup_now, config.incremental_backup_schedule),
        (CLEANUP_JOB_ID, run_cleanup_now, config.cleanup_schedule),
    ]
    for job_id, func, expression in jobs:
        scheduler.add_job(
            _job(func, config, state),
            trigger=CronTrigger.from_crontab(expression, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    return scheduler


def start_scheduler(config: BackupConfig, state: BackupState) -> AsyncIOScheduler:
    """Create and start the scheduler. Must be called from a running event loop."""
    scheduler = create_scheduler(config, state)
    scheduler.start()

    for job in scheduler.get_jobs():
        logger.info(
            "scheduler_job_registered",
            job_id=job.id,
            next_run=job.next_run_time.isoformat() if job.next_run_time else None,
        )
    return scheduler
