# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage contract tests, run against both the local and the S3 variant.
"""

import os
from pathlib import Path

import pytest

from pgchain.config import BackupConfig, StorageType
from pgchain.exceptions import StorageError
from pgchain.storage import LocalStorage, S3Storage, Storage, create_storage, normalize_remote_path


@pytest.mark.asyncio
async def test_directory_upload_download_preserves_tree(storage, temp_dir: Path, tree_factory):
    source = tree_factory(
        temp_dir / "src",
        {
            "PG_VERSION": "17",
            "base/1/1259": "relation",
            "global/pg_control": "control",
        },
    )

    await storage.upload(source, "backups/full_20260101_000000_abcdef")
    await storage.download("backups/full_20260101_000000_abcdef", temp_dir / "out")

    out = temp_dir / "out"
    assert (out / "PG_VERSION").read_text() == "17"
    assert (out / "base/1/1259").read_text() == "relation"
    assert (out / "global/pg_control").read_text() == "control"


@pytest.mark.asyncio
async def test_file_upload_download(storage, temp_dir: Path):
    manifest = temp_dir / "backup_manifest"
    manifest.write_text('{"PostgreSQL-Backup-Manifest-Version": 2}')

    await storage.upload(manifest, "manifests/backup_manifest_20260101_000000_abcdef")
    await storage.download(
        "manifests/backup_manifest_20260101_000000_abcdef", temp_dir / "copy" / "m"
    )

    assert (temp_dir / "copy" / "m").read_text() == manifest.read_text()


@pytest.mark.asyncio
async def test_list_returns_keys_relative_to_root(storage, temp_dir: Path, tree_factory):
    source = tree_factory(temp_dir / "src", {"a": "1", "sub/b": "2"})
    await storage.upload(source, "backups/one")
    await storage.upload(temp_dir / "src" / "a", "manifests/m1")

    assert await storage.list("backups") == {"backups/one/a", "backups/one/sub/b"}
    assert await storage.list("manifests") == {"manifests/m1"}
    assert await storage.list("nothing-here") == set()


@pytest.mark.asyncio
async def test_exists_for_files_and_directories(storage, temp_dir: Path, tree_factory):
    source = tree_factory(temp_dir / "src", {"a": "1"})
    await storage.upload(source, "backups/one")

    assert await storage.exists("backups/one")
    assert await storage.exists("backups/one/a")
    assert not await storage.exists("backups/two")


@pytest.mark.asyncio
async def test_delete_directory_does_not_touch_sibling_prefix(storage, temp_dir: Path, tree_factory):
    source = tree_factory(temp_dir / "src", {"a": "1"})
    await storage.upload(source, "backups/full_1")
    await storage.upload(source, "backups/full_10")

    await storage.delete("backups/full_1")

    assert not await storage.exists("backups/full_1")
    assert await storage.exists("backups/full_10")


@pytest.mark.asyncio
async def test_delete_is_idempotent(storage, temp_dir: Path, tree_factory):
    source = tree_factory(temp_dir / "src", {"a": "1"})
    await storage.upload(source, "backups/one")

    await storage.delete("backups/one")
    await storage.delete("backups/one")
    await storage.delete("never/existed")

    assert not await storage.exists("backups/one")


@pytest.mark.asyncio
async def test_download_missing_path_raises_storage_error(storage, temp_dir: Path):
    with pytest.raises(StorageError) as exc_info:
        await storage.download("backups/missing", temp_dir / "out")

    assert exc_info.value.details["operation"] == "download"
    assert exc_info.value.details["path"] == "backups/missing"


@pytest.mark.asyncio
async def test_upload_missing_local_path_raises_storage_error(storage, temp_dir: Path):
    with pytest.raises(StorageError) as exc_info:
        await storage.upload(temp_dir / "does-not-exist", "backups/x")

    assert exc_info.value.details["operation"] == "upload"


@pytest.mark.asyncio
async def test_delete_refuses_storage_root(storage):
    with pytest.raises(StorageError):
        await storage.delete("")


def test_paths_cannot_escape_namespace():
    with pytest.raises(StorageError):
        normalize_remote_path("backups/../../etc/passwd", "download")

    assert normalize_remote_path("/backups//full_1/", "list") == "backups/full_1"


def test_variants_satisfy_storage_protocol(temp_dir: Path):
    assert isinstance(LocalStorage(temp_dir), Storage)
    assert isinstance(S3Storage(object(), "bucket"), Storage)


def test_create_storage_selects_variant(temp_dir: Path):
    local = create_storage(BackupConfig(storage_path=temp_dir))
    assert isinstance(local, LocalStorage)

    s3 = create_storage(
        BackupConfig(
            storage_type=StorageType.S3,
            storage_path=temp_dir,
            s3_bucket="pg-backups",
            s3_prefix="prod/",
            s3_access_key_id="key",
            s3_secret_access_key="secret",
        ),
        session=object(),
    )
    assert isinstance(s3, S3Storage)
    assert s3.bucket == "pg-backups"
    assert s3.prefix == "prod/"


MIB = 1024 * 1024


@pytest.mark.asyncio
async def test_large_s3_upload_goes_up_in_parts(s3_storage, temp_dir: Path, monkeypatch):
    payload = os.urandom(11 * MIB + 123)
    source = temp_dir / "segment"
    source.write_bytes(payload)
    s3_storage.multipart_threshold = 5 * MIB
    s3_storage.multipart_part_size = 5 * MIB

    multipart_keys = []
    original = s3_storage._put_file_multipart

    async def tracking(client, local_path, key):
        multipart_keys.append(key)
        await original(client, local_path, key)

    monkeypatch.setattr(s3_storage, "_put_file_multipart", tracking)

    await s3_storage.upload(source, "backups/full_1/base/16384")
    destination = temp_dir / "restored-segment"
    await s3_storage.download("backups/full_1/base/16384", destination)

    assert multipart_keys == ["pg/backups/full_1/base/16384"]
    assert destination.read_bytes() == payload


@pytest.mark.asyncio
async def test_failed_multipart_upload_is_aborted(s3_storage, s3_endpoint: str, temp_dir: Path):
    from aiobotocore.session import get_session

    source = temp_dir / "segment"
    source.write_bytes(os.urandom(3 * MIB))
    s3_storage.multipart_threshold = MIB
    # Parts below the S3 minimum are rejected when the upload is completed
    s3_storage.multipart_part_size = MIB

    with pytest.raises(StorageError):
        await s3_storage.upload(source, "backups/full_1/base/16384")

    async with get_session().create_client(
        "s3",
        region_name="us-east-1",
        endpoint_url=s3_endpoint,
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    ) as client:
        pending = await client.list_multipart_uploads(Bucket=s3_storage.bucket)
    assert pending.get("Uploads", []) == []
    assert not await s3_storage.exists("backups/full_1/base/16384")
