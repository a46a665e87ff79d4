# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage capability shared by every backend variant.

Both variants agree on these semantics:

- Paths are '/'-separated and relative to the storage namespace root.
- A path denotes a directory when one or more entries exist under
  "<path>/"; otherwise it denotes a single object (or nothing).
- upload/download of a directory preserve relative structure.
- list() returns every key under "<path>/", flattened, relative to the
  namespace root. list("") lists the whole namespace.
- delete() removes the exact object if present, otherwise everything
  under "<path>/". Deleting an absent path succeeds.
- Every failure from the medium is raised as StorageError(operation, path).
"""

from pathlib import Path, PurePosixPath
from typing import Iterator, Protocol, Set, runtime_checkable

from pgchain.exceptions import StorageError


# Transfer chunk size for streamed copies
CHUNK_SIZE = 1024 * 1024


@runtime_checkable
class Storage(Protocol):
    """Capability interface implemented by LocalStorage and S3Storage."""

    name: str

    async def upload(self, local_path: Path, remote_path: str) -> None:
        ...

    async def download(self, remote_path: str, local_path: Path) -> None:
        ...

    async def list(self, remote_path: str = "") -> Set[str]:
        ...

    async def delete(self, remote_path: str) -> None:
        ...

    async def exists(self, remote_path: str) -> bool:
        ...

    async def close(self) -> None:
        ...


def normalize_remote_path(remote_path: str, operation: str) -> str:
    """
    Normalize a storage path to 'a/b/c' form.

    Raises:
        StorageError: If the path tries to escape the namespace root
    """
    raw = str(remote_path).replace("\\", "/")
    parts = [p for p in PurePosixPath(raw).parts if p not in ("/", ".")]
    if ".." in parts:
        raise StorageError(
            f"Path escapes storage root: {remote_path}",
            operation=operation,
            path=str(remote_path),
        )
    return "/".join(parts)


def join_remote(prefix: str, relative: str) -> str:
    """Join a normalized remote directory with a relative file path."""
    if not prefix:
        return relative
    return f"{prefix}/{relative}"


def iter_local_files(root: Path) -> Iterator[tuple[Path, str]]:
    """
    Yield (absolute_path, relative_posix_path) for every file under root.

    Results are sorted so transfers happen in a stable order.
    """
    for path in sorted(root.rglob("*")):
        if path.is_file():
            yield path, path.relative_to(root).as_posix()
