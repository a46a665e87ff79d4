# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Metadata Lock - Single-writer advisory lock for the chain document.

Every read-modify-write of the metadata document happens while holding
"<metadata file>.lock", created with exclusive create and holding JSON
that identifies the owner. Waiters poll until the timeout expires.

A lock is broken only when it is provably stale: it was written on this
host and the recorded PID is no longer running. Breaking happens under
an flock on "<metadata file>.lock.guard" and only removes the exact lock
(same token) that was judged stale, so two waiters can never both break
their way in.
"""

import asyncio
import fcntl
import json
import os
import platform
import time
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Mapping

import structlog

from pgchain.exceptions import MetadataLockError

logger = structlog.get_logger()

_POLL_INTERVAL_SECONDS = 0.05


def lock_path_for(metadata_path: Path) -> Path:
    return metadata_path.with_name(metadata_path.name + ".lock")


@asynccontextmanager
async def metadata_lock(
    metadata_path: Path,
    timeout: float = 30.0,
    command: str = "write",
) -> AsyncIterator[Path]:
    """
    Hold the metadata write lock for the duration of the block.

    Args:
        metadata_path: Path of the metadata document being protected
        timeout: Seconds to wait for a competing holder
        command: Short label recorded in the lock for operators

    Raises:
        MetadataLockError: If the lock is not acquired within timeout
    """
    from ulid import ULID

    lock_path = lock_path_for(metadata_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    info = {
        "token": str(ULID()),
        "pid": os.getpid(),
        "hostname": platform.node(),
        "command": command,
        "created_at": datetime.now(UTC).isoformat(),
    }

    deadline = time.monotonic() + timeout
    while True:
        try:
            _write_lock_exclusive(lock_path, info)
            break
        except FileExistsError:
            pass

        existing = _try_read_lock(lock_path)
        if existing is not None and _is_provably_stale(existing):
            if _break_stale_lock(lock_path, existing):
                logger.warning(
                    "metadata_lock_stale_broken",
                    lock_path=str(lock_path),
                    holder_pid=existing.get("pid"),
                    holder_command=existing.get("command"),
                )
            continue

        if time.monotonic() >= deadline:
            raise MetadataLockError(
                f"Timed out after {timeout}s waiting for metadata lock {lock_path}",
                details={"lock_path": str(lock_path), "holder": dict(existing or {})},
            )
        await asyncio.sleep(_POLL_INTERVAL_SECONDS)

    logger.debug("metadata_lock_acquired", lock_path=str(lock_path), command=command)
    try:
        yield lock_path
    finally:
        _release_lock(lock_path, info["token"])
        logger.debug("metadata_lock_released", lock_path=str(lock_path), command=command)


def _write_lock_exclusive(lock_path: Path, info: Mapping[str, object]) -> None:
    payload = json.dumps(dict(info), sort_keys=True) + "\n"
    with lock_path.open("x", encoding="utf-8") as f:
        f.write(payload)


def _try_read_lock(lock_path: Path) -> Mapping[str, object] | None:
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _break_stale_lock(lock_path: Path, judged: Mapping[str, object]) -> bool:
    """
    Remove lock_path if it still holds the lock judged stale.

    Returns True when this call removed it. Another waiter may already
    have broken it and taken the lock, in which case nothing is removed.
    """
    guard_path = lock_path.with_name(lock_path.name + ".guard")
    with guard_path.open("a") as guard:
        fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
        try:
            current = _try_read_lock(lock_path)
            if current is None or current.get("token") != judged.get("token"):
                return False
            if not _is_provably_stale(current):
                return False
            lock_path.unlink(missing_ok=True)
            return True
        finally:
            fcntl.flock(guard.fileno(), fcntl.LOCK_UN)


def _release_lock(lock_path: Path, token: str) -> None:
    existing = _try_read_lock(lock_path)
    if existing is None:
        if lock_path.exists():
            logger.warning("metadata_lock_unreadable_on_release", lock_path=str(lock_path))
        return
    if existing.get("token") != token:
        logger.warning("metadata_lock_owner_changed", lock_path=str(lock_path))
        return
    try:
        lock_path.unlink(missing_ok=True)
    except OSError as e:
        raise MetadataLockError(
            f"Failed to release metadata lock {lock_path}: {e}",
            details={"lock_path": str(lock_path)},
        ) from e


def _is_provably_stale(existing: Mapping[str, object]) -> bool:
    host = existing.get("hostname")
    pid = existing.get("pid")
    if not isinstance(host, str) or not isinstance(pid, int):
        return False
    if host.lower() != platform.node().lower():
        return False
    return not is_pid_running(pid)


def is_pid_running(pid: int) -> bool:
    """Whether a process with this PID exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
