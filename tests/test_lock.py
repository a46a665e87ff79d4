# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Metadata lock tests: exclusion, timeout, stale-lock recovery and
serialized concurrent writers.
"""

import asyncio
import json
import os
import platform
import sys
from pathlib import Path

import pytest

from pgchain.chains import list_chains, metadata_lock, register_full_backup, register_incremental_backup
from pgchain.chains.lock import _break_stale_lock, _release_lock, lock_path_for
from pgchain.exceptions import MetadataLockError


@pytest.mark.asyncio
async def test_lock_file_exists_only_while_held(metadata_path: Path):
    lock_path = lock_path_for(metadata_path)

    async with metadata_lock(metadata_path, timeout=1.0, command="test") as held:
        assert held == lock_path
        info = json.loads(lock_path.read_text())
        assert info["pid"] == os.getpid()
        assert info["command"] == "test"

    assert not lock_path.exists()


@pytest.mark.asyncio
async def test_second_holder_times_out(metadata_path: Path):
    async with metadata_lock(metadata_path, timeout=1.0):
        with pytest.raises(MetadataLockError) as exc_info:
            async with metadata_lock(metadata_path, timeout=0.2):
                pass

    assert exc_info.value.details["holder"]["pid"] == os.getpid()


@pytest.mark.asyncio
async def test_lock_released_when_block_raises(metadata_path: Path):
    with pytest.raises(RuntimeError):
        async with metadata_lock(metadata_path, timeout=1.0):
            raise RuntimeError("boom")

    assert not lock_path_for(metadata_path).exists()


@pytest.mark.asyncio
async def test_stale_lock_from_dead_process_is_broken(metadata_path: Path, monkeypatch):
    from pgchain.chains import lock as lock_module

    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(
        json.dumps({"token": "old", "pid": 999999, "hostname": platform.node(), "command": "crashed"})
    )
    monkeypatch.setattr(lock_module, "is_pid_running", lambda pid: False)

    async with metadata_lock(metadata_path, timeout=0.5):
        assert json.loads(lock_path.read_text())["token"] != "old"


@pytest.mark.asyncio
async def test_lock_held_by_other_host_is_not_broken(metadata_path: Path):
    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(
        json.dumps({"token": "remote", "pid": 1, "hostname": "some-other-host", "command": "backup"})
    )

    with pytest.raises(MetadataLockError):
        async with metadata_lock(metadata_path, timeout=0.2):
            pass

    assert json.loads(lock_path.read_text())["token"] == "remote"


@pytest.mark.asyncio
async def test_concurrent_registrations_are_not_lost(metadata_path: Path):
    await asyncio.gather(
        *[
            register_full_backup(metadata_path, f"backups/full_{n}", f"manifests/m{n}", lock_timeout=5.0)
            for n in range(10)
        ]
    )

    chains = await list_chains(metadata_path)
    assert sorted(c.full.backup_path for c in chains) == sorted(f"backups/full_{n}" for n in range(10))


@pytest.mark.asyncio
async def test_racing_incrementals_on_same_parent_only_one_wins(metadata_path: Path):
    full = await register_full_backup(metadata_path, "backups/f", "manifests/f")

    results = await asyncio.gather(
        register_incremental_backup(metadata_path, full.chain_id, "backups/a", "manifests/a", "manifests/f"),
        register_incremental_backup(metadata_path, full.chain_id, "backups/b", "manifests/b", "manifests/f"),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    chains = await list_chains(metadata_path)
    assert len(chains[0].incrementals) == 1


@pytest.mark.asyncio
async def test_stale_lock_replaced_by_live_holder_is_kept(metadata_path: Path, monkeypatch):
    from pgchain.chains import lock as lock_module

    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    judged = {"token": "old", "pid": 999999, "hostname": platform.node(), "command": "crashed"}
    # Another waiter already broke "old" and now holds the lock
    lock_path.write_text(json.dumps({**judged, "token": "new", "pid": os.getpid()}))
    monkeypatch.setattr(lock_module, "is_pid_running", lambda pid: pid == os.getpid())

    assert _break_stale_lock(lock_path, judged) is False
    assert json.loads(lock_path.read_text())["token"] == "new"


def test_release_leaves_unreadable_lock_in_place(metadata_path: Path):
    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text("")

    _release_lock(lock_path, "mine")

    assert lock_path.exists()


_REGISTER_SCRIPT = """
import asyncio, sys
from pathlib import Path
from pgchain.chains import register_full_backup

n = sys.argv[2]
asyncio.run(
    register_full_backup(
        Path(sys.argv[1]), f"backups/full_{n}", f"manifests/m{n}", lock_timeout=30.0
    )
)
"""


@pytest.mark.asyncio
async def test_processes_racing_past_a_stale_lock_lose_no_updates(metadata_path: Path):
    finished = await asyncio.create_subprocess_exec(sys.executable, "-c", "pass")
    await finished.wait()

    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(
        json.dumps(
            {"token": "dead", "pid": finished.pid, "hostname": platform.node(), "command": "crashed"}
        )
    )

    workers = [
        await asyncio.create_subprocess_exec(
            sys.executable, "-c", _REGISTER_SCRIPT, str(metadata_path), str(n)
        )
        for n in range(8)
    ]
    codes = await asyncio.gather(*[w.wait() for w in workers])

    assert codes == [0] * 8
    chains = await list_chains(metadata_path)
    assert sorted(c.full.backup_path for c in chains) == sorted(f"backups/full_{n}" for n in range(8))
    assert not lock_path.exists()
