# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage - Local filesystem and S3 variants of one storage capability.
"""

from typing import Any

from pgchain.config import BackupConfig, StorageType
from pgchain.exceptions import ConfigurationError
from pgchain.storage.base import Storage, normalize_remote_path
from pgchain.storage.local import LocalStorage
from pgchain.storage.s3 import S3Storage


def create_storage(config: BackupConfig, session: Any = None) -> Storage:
    """
    Build the storage variant selected by config.

    Args:
        config: pgchain configuration
        session: aiobotocore session, required for the S3 variant

    Returns:
        A LocalStorage or S3Storage instance
    """
    if config.storage_type == StorageType.LOCAL:
        return LocalStorage(
            config.storage_path,
            max_concurrent_transfers=config.max_concurrent_transfers,
        )

    if config.storage_type == StorageType.S3:
        if session is None:
            from aiobotocore.session import get_session

            session = get_session()
        return S3Storage(
            session,
            config.s3_bucket,
            region=config.s3_region,
            prefix=config.s3_prefix,
            endpoint_url=config.s3_endpoint_url,
            access_key_id=config.s3_access_key_id,
            secret_access_key=config.s3_secret_access_key,
            max_concurrent_transfers=config.max_concurrent_transfers,
        )

    raise ConfigurationError(f"Unknown storage type: {config.storage_type}")


__all__ = [
    "Storage",
    "LocalStorage",
    "S3Storage",
    "create_storage",
    "normalize_remote_path",
]
