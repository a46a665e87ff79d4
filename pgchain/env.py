# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

create_config_from_env() reads the libpq variables the PostgreSQL tools
already understand plus a small set of pgchain/S3 variables, and passes
them through to create_config().
"""

from __future__ import annotations

import os
from pathlib import Path

from pgchain.builder import create_config
from pgchain.config import BackupConfig, StorageType
from pgchain.errors import (
    explain_invalid_port_env,
    explain_invalid_retention_count_env,
    explain_invalid_storage_type_env,
    explain_missing_bucket_env,
)
from pgchain.exceptions import ConfigurationError


def _parse_storage_type(value: str | None) -> StorageType:
    if not value:
        return StorageType.LOCAL
    try:
        return StorageType(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_storage_type_env(value)) from exc


def _parse_retention_count(value: str | None) -> int:
    if not value:
        return 4
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_count_env(value)) from exc
    if count < 0:
        raise ConfigurationError(explain_invalid_retention_count_env(value))
    return count


def _parse_port(value: str | None) -> int:
    if not value:
        return 5432
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_port_env(value)) from exc


def _parse_bool(name: str, value: str | None) -> bool:
    if not value:
        return False
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")


def _optional_path(value: str | None) -> Path | None:
    return Path(value) if value else None


def create_config_from_env() -> BackupConfig:
    """
    Create a BackupConfig from environment variables.

    Database (libpq names):
        - PGHOST, PGPORT, PGDATABASE, PGUSER, PGPASSWORD

    Storage:
        - PGCHAIN_STORAGE_TYPE: 'local' | 's3' (default: local)
        - BACKUP_STORAGE_PATH: local root (default: ./backups)
        - S3_BACKUP_BUCKET: required when storage type is s3
        - S3_BACKUP_REGION: default us-east-1
        - S3_BACKUP_PREFIX: key prefix ending with '/' (optional)
        - S3_ENDPOINT_URL: S3-compatible endpoint (optional)
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
        - PGCHAIN_S3_AMBIENT_CREDENTIALS: use the default AWS credential
          chain (instance role, profile) instead of explicit keys

    Lifecycle:
        - PGCHAIN_RETENTION_COUNT: chains to keep (default: 4)
        - PGCHAIN_FULL_SCHEDULE / PGCHAIN_INCREMENTAL_SCHEDULE /
          PGCHAIN_CLEANUP_SCHEDULE: crontab expressions
        - PGCHAIN_METADATA_PATH / PGCHAIN_RESTORE_PATH /
          PGCHAIN_WAL_ARCHIVE_PATH / PGCHAIN_SCRATCH_PATH
        - PGCHAIN_RESTORE_COMMAND: explicit WAL restore_command
        - PG_BASEBACKUP / PG_COMBINEBACKUP: tool executables
    """
    storage_type = _parse_storage_type(os.getenv("PGCHAIN_STORAGE_TYPE"))

    bucket = os.getenv("S3_BACKUP_BUCKET")
    if storage_type == StorageType.S3 and not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    overrides = {}
    for key, env_name in (
        ("full_backup_schedule", "PGCHAIN_FULL_SCHEDULE"),
        ("incremental_backup_schedule", "PGCHAIN_INCREMENTAL_SCHEDULE"),
        ("cleanup_schedule", "PGCHAIN_CLEANUP_SCHEDULE"),
        ("restore_command", "PGCHAIN_RESTORE_COMMAND"),
        ("pg_basebackup_path", "PG_BASEBACKUP"),
        ("pg_combinebackup_path", "PG_COMBINEBACKUP"),
    ):
        value = os.getenv(env_name)
        if value:
            overrides[key] = value

    for key, env_name in (
        ("metadata_path", "PGCHAIN_METADATA_PATH"),
        ("restore_path", "PGCHAIN_RESTORE_PATH"),
        ("wal_archive_path", "PGCHAIN_WAL_ARCHIVE_PATH"),
        ("scratch_path", "PGCHAIN_SCRATCH_PATH"),
    ):
        path = _optional_path(os.getenv(env_name))
        if path is not None:
            overrides[key] = path

    if storage_type == StorageType.S3:
        overrides.update(
            s3_region=os.getenv("S3_BACKUP_REGION", "us-east-1"),
            s3_prefix=os.getenv("S3_BACKUP_PREFIX", ""),
            s3_endpoint_url=os.getenv("S3_ENDPOINT_URL"),
            s3_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            s3_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            s3_use_ambient_credentials=_parse_bool(
                "PGCHAIN_S3_AMBIENT_CREDENTIALS",
                os.getenv("PGCHAIN_S3_AMBIENT_CREDENTIALS"),
            ),
        )

    return create_config(
        database_name=os.getenv("PGDATABASE", "postgres"),
        database_host=os.getenv("PGHOST", "localhost"),
        database_port=_parse_port(os.getenv("PGPORT")),
        database_user=os.getenv("PGUSER", "postgres"),
        database_password=os.getenv("PGPASSWORD"),
        storage_type=storage_type,
        storage_path=os.getenv("BACKUP_STORAGE_PATH", "./backups"),
        s3_bucket=bucket,
        retention_count=_parse_retention_count(os.getenv("PGCHAIN_RETENTION_COUNT")),
        **overrides,
    )
