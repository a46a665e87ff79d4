# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain S3 Storage - Storage namespace in an S3 (or S3-compatible) bucket.

Directory detection uses prefix listing: a path is a directory when at
least one key exists under "<prefix><path>/". A client is created per
operation from a shared aiobotocore session.
"""

import asyncio
from pathlib import Path
from typing import Any, List, Set

import aiofiles
import aiofiles.os
import structlog
from botocore.exceptions import ClientError

from pgchain.exceptions import StorageError
from pgchain.storage.base import (
    CHUNK_SIZE,
    iter_local_files,
    join_remote,
    normalize_remote_path,
)

logger = structlog.get_logger()

# S3 DeleteObjects accepts at most 1000 keys per request
_DELETE_BATCH_SIZE = 1000

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

# Files above the threshold go up in parts. S3 parts other than the last
# must be at least 5 MiB.
MULTIPART_THRESHOLD = 64 * 1024 * 1024
MULTIPART_PART_SIZE = 16 * CHUNK_SIZE


def _is_not_found(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _NOT_FOUND_CODES


class S3Storage:
    """Store artifacts as objects in an S3 bucket under an optional key prefix."""

    name = "s3"

    def __init__(
        self,
        session: Any,
        bucket: str,
        *,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_concurrent_transfers: int = 8,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        multipart_part_size: int = MULTIPART_PART_SIZE,
    ):
        self.session = session
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._max_concurrent = max_concurrent_transfers
        self.multipart_threshold = multipart_threshold
        self.multipart_part_size = multipart_part_size

    def _client(self):
        kwargs: dict = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        return self.session.create_client("s3", **kwargs)

    def _key(self, normalized: str) -> str:
        return f"{self.prefix}{normalized}"

    def _dir_prefix(self, normalized: str) -> str:
        return f"{self.prefix}{normalized}/" if normalized else self.prefix

    def _relative(self, key: str) -> str:
        return key[len(self.prefix):] if self.prefix else key

    async def upload(self, local_path: Path, remote_path: str) -> None:
        """Upload a file, or every file under a directory, to the bucket."""
        normalized = normalize_remote_path(remote_path, "upload")
        local_path = Path(local_path)

        try:
            async with self._client() as s3_client:
                if local_path.is_dir():
                    files = list(iter_local_files(local_path))
                    semaphore = asyncio.Semaphore(self._max_concurrent)

                    async def upload_one(src: Path, rel: str) -> None:
                        async with semaphore:
                            await self._put_file(
                                s3_client, src, self._key(join_remote(normalized, rel))
                            )

                    await asyncio.gather(*[upload_one(src, rel) for src, rel in files])
                    logger.debug(
                        "s3_directory_uploaded",
                        local_path=str(local_path),
                        remote_path=normalized,
                        files=len(files),
                    )
                elif local_path.is_file():
                    await self._put_file(s3_client, local_path, self._key(normalized))
                    logger.debug(
                        "s3_file_uploaded",
                        local_path=str(local_path),
                        remote_path=normalized,
                    )
                else:
                    raise FileNotFoundError(f"No such file or directory: {local_path}")
        except Exception as e:
            raise StorageError(
                f"Failed to upload {local_path} to S3: {e}",
                operation="upload",
                path=normalized,
            ) from e

    async def download(self, remote_path: str, local_path: Path) -> None:
        """Download an object, or every object under a prefix, to local_path."""
        normalized = normalize_remote_path(remote_path, "download")
        local_path = Path(local_path)

        try:
            async with self._client() as s3_client:
                keys = await self._list_keys(s3_client, self._dir_prefix(normalized))
                if keys:
                    await aiofiles.os.makedirs(local_path, exist_ok=True)
                    dir_prefix = self._dir_prefix(normalized)
                    semaphore = asyncio.Semaphore(self._max_concurrent)

                    async def download_one(key: str) -> None:
                        async with semaphore:
                            await self._get_file(
                                s3_client, key, local_path / key[len(dir_prefix):]
                            )

                    await asyncio.gather(*[download_one(k) for k in keys])
                else:
                    try:
                        await self._get_file(s3_client, self._key(normalized), local_path)
                    except ClientError as e:
                        if _is_not_found(e):
                            raise StorageError(
                                f"Not found in storage: {normalized}",
                                operation="download",
                                path=normalized,
                            ) from e
                        raise
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to download {normalized} from S3: {e}",
                operation="download",
                path=normalized,
            ) from e

        logger.debug("s3_downloaded", remote_path=normalized, local_path=str(local_path))

    async def list(self, remote_path: str = "") -> Set[str]:
        normalized = normalize_remote_path(remote_path, "list")
        try:
            async with self._client() as s3_client:
                keys = await self._list_keys(s3_client, self._dir_prefix(normalized))
        except Exception as e:
            raise StorageError(
                f"Failed to list {normalized} in S3: {e}",
                operation="list",
                path=normalized,
            ) from e
        return {self._relative(k) for k in keys}

    async def delete(self, remote_path: str) -> None:
        """
        Delete the exact object if it exists, otherwise everything under
        the prefix. Absent paths are ignored.
        """
        normalized = normalize_remote_path(remote_path, "delete")
        if not normalized:
            raise StorageError(
                "Refusing to delete the storage root",
                operation="delete",
                path=normalized,
            )

        try:
            async with self._client() as s3_client:
                if await self._head(s3_client, self._key(normalized)):
                    await s3_client.delete_object(Bucket=self.bucket, Key=self._key(normalized))
                    logger.debug("s3_object_deleted", remote_path=normalized)
                    return

                keys = await self._list_keys(s3_client, self._dir_prefix(normalized))
                if not keys:
                    logger.debug("s3_delete_absent", remote_path=normalized)
                    return

                for start in range(0, len(keys), _DELETE_BATCH_SIZE):
                    batch = keys[start:start + _DELETE_BATCH_SIZE]
                    response = await s3_client.delete_objects(
                        Bucket=self.bucket,
                        Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                    )
                    failed = response.get("Errors", [])
                    if failed:
                        raise StorageError(
                            f"Failed to delete {len(failed)} object(s) under {normalized}",
                            operation="delete",
                            path=normalized,
                            details={"failed_keys": [f.get("Key") for f in failed]},
                        )
                logger.debug("s3_prefix_deleted", remote_path=normalized, objects=len(keys))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to delete {normalized} from S3: {e}",
                operation="delete",
                path=normalized,
            ) from e

    async def exists(self, remote_path: str) -> bool:
        normalized = normalize_remote_path(remote_path, "exists")
        try:
            async with self._client() as s3_client:
                if normalized and await self._head(s3_client, self._key(normalized)):
                    return True
                response = await s3_client.list_objects_v2(
                    Bucket=self.bucket,
                    Prefix=self._dir_prefix(normalized),
                    MaxKeys=1,
                )
                return response.get("KeyCount", 0) > 0
        except Exception as e:
            raise StorageError(
                f"Failed to check {normalized} in S3: {e}",
                operation="exists",
                path=normalized,
            ) from e

    async def close(self) -> None:
        return None

    async def _head(self, s3_client: Any, key: str) -> bool:
        try:
            await s3_client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise

    async def _list_keys(self, s3_client: Any, prefix: str) -> List[str]:
        keys: List[str] = []
        paginator = s3_client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return keys

    async def _put_file(self, s3_client: Any, local_path: Path, key: str) -> None:
        size = (await aiofiles.os.stat(local_path)).st_size
        if size > self.multipart_threshold:
            await self._put_file_multipart(s3_client, local_path, key)
            return
        async with aiofiles.open(local_path, "rb") as f:
            content = await f.read()
        await s3_client.put_object(Bucket=self.bucket, Key=key, Body=content)

    async def _put_file_multipart(self, s3_client: Any, local_path: Path, key: str) -> None:
        """Upload one part at a time so only a single part is held in memory."""
        response = await s3_client.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = response["UploadId"]
        parts: List[dict] = []
        try:
            async with aiofiles.open(local_path, "rb") as f:
                part_number = 1
                while True:
                    body = await f.read(self.multipart_part_size)
                    if not body:
                        break
                    part = await s3_client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=body,
                    )
                    parts.append({"ETag": part["ETag"], "PartNumber": part_number})
                    part_number += 1
            await s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception:
            await s3_client.abort_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=upload_id
            )
            logger.warning("s3_multipart_upload_aborted", key=key, parts_uploaded=len(parts))
            raise
        logger.debug("s3_multipart_uploaded", key=key, parts=len(parts))

    async def _get_file(self, s3_client: Any, key: str, local_path: Path) -> None:
        response = await s3_client.get_object(Bucket=self.bucket, Key=key)
        await aiofiles.os.makedirs(local_path.parent, exist_ok=True)
        async with response["Body"] as stream, aiofiles.open(local_path, "wb") as f:
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                await f.write(chunk)
