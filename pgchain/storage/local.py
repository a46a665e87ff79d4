# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Local Storage - Storage namespace rooted in a local directory.

Directory detection uses the filesystem: a path is a directory when it
is a directory on disk that holds at least one file.
"""

import asyncio
import shutil
from pathlib import Path
from typing import List, Set, Tuple

import aiofiles
import aiofiles.os
import structlog

from pgchain.exceptions import StorageError
from pgchain.storage.base import (
    CHUNK_SIZE,
    iter_local_files,
    join_remote,
    normalize_remote_path,
)

logger = structlog.get_logger()


class LocalStorage:
    """Store artifacts below base_path on the local filesystem."""

    name = "local"

    def __init__(self, base_path: Path, max_concurrent_transfers: int = 8):
        self.base_path = Path(base_path).expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._max_concurrent = max_concurrent_transfers

    def _resolve(self, remote_path: str, operation: str) -> Tuple[str, Path]:
        normalized = normalize_remote_path(remote_path, operation)
        return normalized, self.base_path / normalized if normalized else self.base_path

    async def upload(self, local_path: Path, remote_path: str) -> None:
        """Copy a file, or a directory tree, into the namespace."""
        normalized, destination = self._resolve(remote_path, "upload")
        local_path = Path(local_path)

        try:
            if local_path.is_dir():
                files = list(iter_local_files(local_path))
                await self._copy_many(
                    [(src, destination / rel) for src, rel in files]
                )
                logger.debug(
                    "local_directory_uploaded",
                    local_path=str(local_path),
                    remote_path=normalized,
                    files=len(files),
                )
            elif local_path.is_file():
                await _copy_file(local_path, destination)
                logger.debug(
                    "local_file_uploaded",
                    local_path=str(local_path),
                    remote_path=normalized,
                )
            else:
                raise FileNotFoundError(f"No such file or directory: {local_path}")
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to upload {local_path}: {e}",
                operation="upload",
                path=normalized,
            ) from e

    async def download(self, remote_path: str, local_path: Path) -> None:
        """Copy a stored file, or directory tree, out to local_path."""
        normalized, source = self._resolve(remote_path, "download")
        local_path = Path(local_path)

        try:
            if await aiofiles.os.path.isdir(source):
                await aiofiles.os.makedirs(local_path, exist_ok=True)
                files = list(iter_local_files(source))
                await self._copy_many([(src, local_path / rel) for src, rel in files])
            elif await aiofiles.os.path.isfile(source):
                await _copy_file(source, local_path)
            else:
                raise StorageError(
                    f"Not found in storage: {normalized}",
                    operation="download",
                    path=normalized,
                )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to download {normalized}: {e}",
                operation="download",
                path=normalized,
            ) from e

        logger.debug("local_downloaded", remote_path=normalized, local_path=str(local_path))

    async def list(self, remote_path: str = "") -> Set[str]:
        """All file paths under remote_path, relative to the namespace root."""
        normalized, directory = self._resolve(remote_path, "list")
        try:
            if not await aiofiles.os.path.isdir(directory):
                return set()
            files = await asyncio.to_thread(lambda: list(iter_local_files(directory)))
        except Exception as e:
            raise StorageError(
                f"Failed to list {normalized}: {e}",
                operation="list",
                path=normalized,
            ) from e
        return {join_remote(normalized, rel) for _, rel in files}

    async def delete(self, remote_path: str) -> None:
        """Remove a file or directory tree. Absent paths are ignored."""
        normalized, target = self._resolve(remote_path, "delete")
        if not normalized:
            raise StorageError(
                "Refusing to delete the storage root",
                operation="delete",
                path=normalized,
            )

        try:
            if await aiofiles.os.path.isfile(target):
                await aiofiles.os.remove(target)
            elif await aiofiles.os.path.isdir(target):
                await asyncio.to_thread(shutil.rmtree, target)
            else:
                logger.debug("local_delete_absent", remote_path=normalized)
                return
        except Exception as e:
            raise StorageError(
                f"Failed to delete {normalized}: {e}",
                operation="delete",
                path=normalized,
            ) from e

        logger.debug("local_deleted", remote_path=normalized)

    async def exists(self, remote_path: str) -> bool:
        normalized, target = self._resolve(remote_path, "exists")
        try:
            if await aiofiles.os.path.isfile(target):
                return True
            if await aiofiles.os.path.isdir(target):
                return bool(await self.list(normalized))
            return False
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to check {normalized}: {e}",
                operation="exists",
                path=normalized,
            ) from e

    async def close(self) -> None:
        return None

    async def _copy_many(self, pairs: List[Tuple[Path, Path]]) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def copy_one(src: Path, dst: Path) -> None:
            async with semaphore:
                await _copy_file(src, dst)

        await asyncio.gather(*[copy_one(src, dst) for src, dst in pairs])


async def _copy_file(source: Path, destination: Path) -> None:
    """Stream one file to destination, creating parent directories."""
    await aiofiles.os.makedirs(destination.parent, exist_ok=True)
    async with aiofiles.open(source, "rb") as src, aiofiles.open(destination, "wb") as dst:
        while True:
            chunk = await src.read(CHUNK_SIZE)
            if not chunk:
                break
            await dst.write(chunk)
