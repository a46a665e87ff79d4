# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for pgchain tests.

Provides temporary storage roots, an S3 server (moto), fake
pg_basebackup/pg_combinebackup scripts, and configuration helpers.
"""

import os
import socket
import stat
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio

# Set test environment variables
os.environ["PGCHAIN_ADMIN_API_KEY"] = "test-api-key-12345"
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

TEST_BUCKET = "pgchain-test-bucket"


# Writes a small data directory plus backup_manifest into the -D target.
# An --incremental=<manifest> argument is recorded in INCREMENTAL_OF.
FAKE_BASEBACKUP = """#!/bin/sh
target=""
parent=""
while [ $# -gt 0 ]; do
  case "$1" in
    -D) target="$2"; shift 2 ;;
    --incremental=*) parent="${1#--incremental=}"; shift ;;
    *) shift ;;
  esac
done
if [ -n "$FAKE_BASEBACKUP_FAIL" ]; then
  echo "pg_basebackup: error: connection to server failed" >&2
  exit 1
fi
mkdir -p "$target/base/1"
echo "PG_VERSION 17" > "$target/PG_VERSION"
echo "relation data $$" > "$target/base/1/1259"
if [ -n "$parent" ]; then
  cp "$parent" "$target/INCREMENTAL_OF"
fi
if [ -z "$FAKE_BASEBACKUP_NO_MANIFEST" ]; then
  echo "{\\"PostgreSQL-Backup-Manifest-Version\\": 2, \\"pid\\": $$}" > "$target/backup_manifest"
fi
echo "pg_basebackup: base backup completed"
"""

# Copies the first directory to -o and lists every input directory in COMBINED_FROM.
FAKE_COMBINEBACKUP = """#!/bin/sh
output=""
inputs=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) output="$2"; shift 2 ;;
    *) inputs="$inputs $1"; shift ;;
  esac
done
if [ -n "$FAKE_COMBINEBACKUP_FAIL" ]; then
  echo "pg_combinebackup: error: manifest checksum mismatch" >&2
  exit 1
fi
mkdir -p "$output"
first=""
for dir in $inputs; do
  [ -z "$first" ] && first="$dir"
  echo "$dir" >> "$output/COMBINED_FROM"
done
cp -R "$first"/. "$output"/
echo "pg_combinebackup: done"
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_tools(temp_dir: Path) -> dict:
    """Executable stand-ins for pg_basebackup and pg_combinebackup."""
    bin_dir = temp_dir / "bin"
    bin_dir.mkdir()
    return {
        "pg_basebackup": str(_write_script(bin_dir / "pg_basebackup", FAKE_BASEBACKUP)),
        "pg_combinebackup": str(_write_script(bin_dir / "pg_combinebackup", FAKE_COMBINEBACKUP)),
    }


@pytest.fixture
def test_config(temp_dir: Path, fake_tools: dict):
    """Local storage configuration wired to the fake tools."""
    from pgchain.config import BackupConfig, StorageType

    return BackupConfig(
        database_name="app",
        database_user="backup",
        database_password="secret",
        storage_type=StorageType.LOCAL,
        storage_path=temp_dir / "storage",
        scratch_path=temp_dir / "scratch",
        restore_path=temp_dir / "restore",
        pg_basebackup_path=fake_tools["pg_basebackup"],
        pg_combinebackup_path=fake_tools["pg_combinebackup"],
        retention_count=2,
        lock_timeout_seconds=2.0,
    )


@pytest_asyncio.fixture
async def backup_state(test_config):
    """Initialized runtime state over local storage."""
    from pgchain.core import initialize_backup_state, shutdown_backup_state

    state = await initialize_backup_state(test_config)
    yield state
    await shutdown_backup_state(state)


@pytest.fixture
def metadata_path(temp_dir: Path) -> Path:
    return temp_dir / "meta" / "chains.json"


@pytest.fixture
def local_storage(temp_dir: Path):
    from pgchain.storage import LocalStorage

    return LocalStorage(temp_dir / "local-root")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(scope="session")
def moto_server():
    """
    A moto S3 server for the session.

    aiobotocore talks HTTP to it through endpoint_url, which works where
    the in-process mock_aws patching does not.
    """
    from moto.server import ThreadedMotoServer

    port = _free_port()
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=port)
    server.start()
    yield f"http://127.0.0.1:{port}"
    server.stop()


@pytest_asyncio.fixture
async def s3_endpoint(moto_server: str):
    """Fresh, empty test bucket on the moto server."""
    from aiobotocore.session import get_session

    session = get_session()
    async with session.create_client(
        "s3", region_name="us-east-1", endpoint_url=moto_server
    ) as client:
        await client.create_bucket(Bucket=TEST_BUCKET)
        yield moto_server

        paginator = client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=TEST_BUCKET):
            for obj in page.get("Contents", []):
                await client.delete_object(Bucket=TEST_BUCKET, Key=obj["Key"])
        await client.delete_bucket(Bucket=TEST_BUCKET)


@pytest.fixture
def s3_storage(s3_endpoint: str):
    from aiobotocore.session import get_session

    from pgchain.storage import S3Storage

    return S3Storage(
        get_session(),
        TEST_BUCKET,
        region="us-east-1",
        prefix="pg/",
        endpoint_url=s3_endpoint,
        access_key_id="testing",
        secret_access_key="testing",
    )


@pytest.fixture(params=["local", "s3"])
def storage(request):
    """Each storage variant in turn."""
    if request.param == "local":
        return request.getfixturevalue("local_storage")
    return request.getfixturevalue("s3_storage")


def make_tree(root: Path, files: dict) -> Path:
    """Create files under root from {relative_path: content}."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def tree_factory():
    return make_tree
