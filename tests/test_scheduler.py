# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Scheduler tests: job registration and the run_*_now helpers.
"""

import pytest

from pgchain.chains import list_chains
from pgchain.exceptions import BackupError
from pgchain.scheduler import (
    CLEANUP_JOB_ID,
    FULL_JOB_ID,
    INCREMENTAL_JOB_ID,
    create_scheduler,
    run_cleanup_now,
    run_full_backup_now,
    run_incremental_backup_now,
    start_scheduler,
)


@pytest.mark.asyncio
async def test_incremental_falls_back_to_full_without_chain(test_config, backup_state):
    result = await run_incremental_backup_now(test_config, backup_state)

    assert result.kind == "full"
    assert backup_state["total_full_backups"] == 1

    result = await run_incremental_backup_now(test_config, backup_state)
    assert result.kind == "incremental"


@pytest.mark.asyncio
async def test_cleanup_enforces_retention(test_config, backup_state):
    for _ in range(4):
        await run_full_backup_now(test_config, backup_state)

    deleted = await run_cleanup_now(test_config, backup_state)

    assert len(deleted) == 2
    assert len(await list_chains(backup_state["metadata_path"])) == test_config.retention_count
    assert backup_state["total_chains_deleted"] == 2


@pytest.mark.asyncio
async def test_run_now_helpers_reraise(test_config, backup_state, monkeypatch):
    monkeypatch.setenv("FAKE_BASEBACKUP_FAIL", "1")

    with pytest.raises(BackupError):
        await run_full_backup_now(test_config, backup_state)


@pytest.mark.asyncio
async def test_scheduler_registers_three_cron_jobs(test_config, backup_state):
    scheduler = create_scheduler(test_config, backup_state)

    assert {job.id for job in scheduler.get_jobs()} == {
        FULL_JOB_ID,
        INCREMENTAL_JOB_ID,
        CLEANUP_JOB_ID,
    }
    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_scheduler_computes_next_runs(test_config, backup_state):
    scheduler = start_scheduler(test_config, backup_state)
    try:
        assert scheduler.running
        for job in scheduler.get_jobs():
            assert job.next_run_time is not None
    finally:
        scheduler.shutdown(wait=False)
