# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Builder - Functional builder pattern for configuration.

This module provides pure functions for building BackupConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict

from pgchain.config import BackupConfig, StorageType


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary with defaults.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "database_host": "localhost",
        "database_port": 5432,
        "database_name": "postgres",
        "database_user": "postgres",
        "database_password": None,
        "storage_type": StorageType.LOCAL,
        "storage_path": Path("./backups"),
        "s3_bucket": None,
        "s3_region": "us-east-1",
        "s3_prefix": "",
        "s3_endpoint_url": None,
        "s3_access_key_id": None,
        "s3_secret_access_key": None,
        "s3_use_ambient_credentials": False,
        "full_backup_schedule": "0 2 * * 0",
        "incremental_backup_schedule": "0 2 * * *",
        "cleanup_schedule": "0 3 * * *",
        "retention_count": 4,
        "metadata_path": None,
        "wal_archive_path": None,
        "restore_path": None,
        "scratch_path": None,
        "pg_basebackup_path": "pg_basebackup",
        "pg_combinebackup_path": "pg_combinebackup",
        "lock_timeout_seconds": 30.0,
        "restore_command": None,
        "max_concurrent_transfers": 8,
    }


def with_database(
    config: ConfigDict,
    name: str,
    *,
    host: str = "localhost",
    port: int = 5432,
    user: str = "postgres",
    password: str | None = None,
) -> ConfigDict:
    """
    Set the database the backup tool connects to.

    Args:
        config: Current configuration dictionary
        name: Database name
        host: Server host
        port: Server port
        user: Role used for replication connections
        password: Optional password (passed via PGPASSWORD)

    Returns:
        New configuration dictionary with database settings
    """
    return {
        **config,
        "database_name": name,
        "database_host": host,
        "database_port": port,
        "database_user": user,
        "database_password": password,
    }


def with_local_storage(config: ConfigDict, storage_path: Path | str) -> ConfigDict:
    """
    Store backup artifacts on the local filesystem.

    Args:
        config: Current configuration dictionary
        storage_path: Root directory of the storage namespace

    Returns:
        New configuration dictionary with local storage selected
    """
    return {**config, "storage_type": StorageType.LOCAL, "storage_path": Path(storage_path)}


def with_s3_storage(
    config: ConfigDict,
    bucket: str,
    *,
    region: str = "us-east-1",
    prefix: str = "",
    endpoint_url: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    use_ambient_credentials: bool = False,
) -> ConfigDict:
    """
    Store backup artifacts in an S3 bucket.

    The local storage_path is still used for the metadata document,
    the restore target and the WAL archive default.
    """
    return {
        **config,
        "storage_type": StorageType.S3,
        "s3_bucket": bucket,
        "s3_region": region,
        "s3_prefix": prefix,
        "s3_endpoint_url": endpoint_url,
        "s3_access_key_id": access_key_id,
        "s3_secret_access_key": secret_access_key,
        "s3_use_ambient_credentials": use_ambient_credentials,
    }


def keep_chains(config: ConfigDict, count: int) -> ConfigDict:
    """
    Set how many of the most recent chains survive cleanup.

    Args:
        config: Current configuration dictionary
        count: Retention count (0 deletes every chain on cleanup)

    Returns:
        New configuration dictionary with retention set
    """
    return {**config, "retention_count": count}


def full_backups_on(config: ConfigDict, crontab: str) -> ConfigDict:
    """Set the crontab schedule for full backups."""
    return {**config, "full_backup_schedule": crontab}


def incremental_backups_on(config: ConfigDict, crontab: str) -> ConfigDict:
    """Set the crontab schedule for incremental backups."""
    return {**config, "incremental_backup_schedule": crontab}


def cleanup_on(config: ConfigDict, crontab: str) -> ConfigDict:
    """Set the crontab schedule for retention cleanup."""
    return {**config, "cleanup_schedule": crontab}


def with_tools(
    config: ConfigDict,
    *,
    pg_basebackup: str | None = None,
    pg_combinebackup: str | None = None,
) -> ConfigDict:
    """
    Point at specific pg_basebackup / pg_combinebackup executables.

    Useful when several PostgreSQL versions are installed side by side.
    """
    updated = dict(config)
    if pg_basebackup:
        updated["pg_basebackup_path"] = pg_basebackup
    if pg_combinebackup:
        updated["pg_combinebackup_path"] = pg_combinebackup
    return updated


def build_config(config_dict: ConfigDict) -> BackupConfig:
    """
    Validate and build an immutable BackupConfig from a configuration dictionary.

    Raises:
        ConfigurationError: If validation fails
    """
    return BackupConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: with_database(c, "app"),
            lambda c: keep_chains(c, 2),
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def create_config(
    *,
    database_name: str = "postgres",
    database_host: str = "localhost",
    database_port: int = 5432,
    database_user: str = "postgres",
    database_password: str | None = None,
    storage_type: str | StorageType = "local",
    storage_path: str | Path = "./backups",
    s3_bucket: str | None = None,
    retention_count: int = 4,
    **kwargs: Any,
) -> BackupConfig:
    """
    Create a BackupConfig from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Example:
        # Local storage, keep two chains
        config = create_config(
            database_name="app",
            storage_path="/var/lib/pgchain",
            retention_count=2,
        )

        # S3 storage
        config = create_config(
            database_name="app",
            storage_type="s3",
            s3_bucket="my-db-backups",
            s3_access_key_id="...",
            s3_secret_access_key="...",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_database(
        config_dict,
        database_name,
        host=database_host,
        port=database_port,
        user=database_user,
        password=database_password,
    )
    config_dict["storage_path"] = Path(storage_path)

    try:
        kind = StorageType(storage_type.lower()) if isinstance(storage_type, str) else storage_type
    except ValueError as exc:
        from pgchain.exceptions import ConfigurationError

        raise ConfigurationError(
            f"storage_type must be 'local' or 's3', got {storage_type!r}"
        ) from exc
    if kind == StorageType.S3:
        config_dict = with_s3_storage(
            config_dict,
            s3_bucket or "",
            region=kwargs.pop("s3_region", "us-east-1"),
            prefix=kwargs.pop("s3_prefix", ""),
            endpoint_url=kwargs.pop("s3_endpoint_url", None),
            access_key_id=kwargs.pop("s3_access_key_id", None),
            secret_access_key=kwargs.pop("s3_secret_access_key", None),
            use_ambient_credentials=kwargs.pop("s3_use_ambient_credentials", False),
        )

    config_dict = keep_chains(config_dict, retention_count)

    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
