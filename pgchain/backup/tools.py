# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
External tool invocation and scratch space.

pg_basebackup and pg_combinebackup are opaque: they take paths, and
report success through their exit status plus combined stdout/stderr.
"""

import asyncio
import secrets
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Dict, List, Sequence

import structlog

logger = structlog.get_logger()


@dataclass
class ToolResult:
    """Exit status and combined output of an external tool run."""

    argv: List[str]
    returncode: int
    output: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def run_tool(argv: Sequence[str], env: Dict[str, str] | None = None) -> ToolResult:
    """
    Run an external tool to completion, capturing stdout and stderr together.

    There is no timeout; a stalled tool blocks the caller.
    """
    argv = [str(a) for a in argv]
    logger.info("tool_started", tool=argv[0], argv=argv)

    process = await asyncio.create_subprocess_exec(
        *argv,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await process.communicate()
    output = stdout.decode("utf-8", errors="replace") if stdout else ""

    result = ToolResult(argv=argv, returncode=process.returncode, output=output)
    log = logger.info if result.success else logger.error
    log("tool_finished", tool=argv[0], returncode=result.returncode)
    return result


@asynccontextmanager
async def scratch_directory(prefix: str, parent: Path | None = None) -> AsyncIterator[Path]:
    """
    A temporary directory removed on every exit path.

    Args:
        prefix: Directory name prefix
        parent: Parent directory (system temp dir when None)
    """
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    try:
        yield path
    finally:
        await asyncio.to_thread(shutil.rmtree, path, True)
        logger.debug("scratch_removed", path=str(path))


def artifact_stamp(now: datetime | None = None) -> str:
    """
    UTC second-resolution timestamp plus a random suffix.

    The suffix keeps two backups started within the same second apart.
    """
    now = now or datetime.now(UTC)
    return f"{now.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"
