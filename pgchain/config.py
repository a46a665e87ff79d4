# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while a backup or restore is running.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List
from urllib.parse import quote

from pgchain.errors import explain_invalid_cron, explain_missing_s3_credentials


class StorageType(str, Enum):
    """Storage backend variant."""

    LOCAL = "local"
    S3 = "s3"


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_crontab(expression: str) -> bool:
    """Validate a five-field crontab expression."""
    if not expression or len(expression.split()) != 5:
        return False
    from apscheduler.triggers.cron import CronTrigger

    try:
        CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for backup chain management.

    Paths that are derived from storage_path (metadata document, WAL
    archive, restore target) are filled in after validation when they
    are not given explicitly.
    """

    # Database connection (passed to the backup tool via libpq env vars)
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "postgres"
    database_user: str = "postgres"
    database_password: str | None = None

    # Storage backend
    storage_type: StorageType = StorageType.LOCAL
    storage_path: Path = field(default_factory=lambda: Path("./backups"))
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_prefix: str = ""
    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_use_ambient_credentials: bool = False

    # Cron-style schedules (UTC)
    full_backup_schedule: str = "0 2 * * 0"  # Weekly, Sunday 02:00
    incremental_backup_schedule: str = "0 2 * * *"  # Daily 02:00
    cleanup_schedule: str = "0 3 * * *"

    # Number of most recent chains to keep
    retention_count: int = 4

    # Derived from storage_path when unset
    metadata_path: Path | None = None
    wal_archive_path: Path | None = None
    restore_path: Path | None = None

    # Parent directory for scratch space (system temp dir when unset)
    scratch_path: Path | None = None

    # External tools
    pg_basebackup_path: str = "pg_basebackup"
    pg_combinebackup_path: str = "pg_combinebackup"

    # Seconds to wait for the metadata write lock
    lock_timeout_seconds: float = 30.0

    # Overrides the WAL archive restore_command written during recovery
    restore_command: str | None = None

    # Maximum concurrent per-file transfers within one directory upload/download
    max_concurrent_transfers: int = 8

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not self.database_name:
            errors.append("database_name is required")
        if not self.database_user:
            errors.append("database_user is required")
        if not 1 <= self.database_port <= 65535:
            errors.append(f"database_port must be between 1 and 65535, got {self.database_port}")

        if self.storage_type == StorageType.S3:
            if not self.s3_bucket:
                errors.append("s3_bucket is required for S3 storage")
            elif not _validate_bucket_name(self.s3_bucket):
                errors.append(f"Invalid bucket name: {self.s3_bucket}")
            has_keys = bool(self.s3_access_key_id and self.s3_secret_access_key)
            if not has_keys and not self.s3_use_ambient_credentials:
                errors.append(explain_missing_s3_credentials())
            if self.s3_prefix and not self.s3_prefix.endswith("/"):
                errors.append(f"s3_prefix must end with '/', got {self.s3_prefix!r}")
        elif self.storage_type == StorageType.LOCAL:
            if not str(self.storage_path):
                errors.append("storage_path is required for local storage")
        else:
            errors.append(f"storage_type must be 'local' or 's3', got {self.storage_type!r}")

        for name in ("full_backup_schedule", "incremental_backup_schedule", "cleanup_schedule"):
            value = getattr(self, name)
            if not _validate_crontab(value):
                errors.append(explain_invalid_cron(name, value))

        if self.retention_count < 0:
            errors.append(f"retention_count must be >= 0, got {self.retention_count}")

        if self.lock_timeout_seconds <= 0:
            errors.append(f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}")

        if self.max_concurrent_transfers < 1:
            errors.append(
                f"max_concurrent_transfers must be >= 1, got {self.max_concurrent_transfers}"
            )

        if errors:
            from pgchain.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        storage_path = Path(self.storage_path).expanduser()
        object.__setattr__(self, "storage_path", storage_path)
        for key, default in self._derived_paths(storage_path).items():
            if getattr(self, key) is None:
                object.__setattr__(self, key, default)

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance. Paths that
        were derived from storage_path follow a new storage_path unless
        they are passed explicitly.
        """
        from dataclasses import asdict

        current = asdict(self)
        if "storage_path" in kwargs:
            for key, default in self._derived_paths(self.storage_path).items():
                if key not in kwargs and current[key] == default:
                    current[key] = None
        current.update(kwargs)
        return BackupConfig(**current)

    @staticmethod
    def _derived_paths(storage_path: Path) -> Dict[str, Path]:
        return {
            "metadata_path": storage_path / "backup_metadata.json",
            "wal_archive_path": storage_path / "wal_archive",
            "restore_path": storage_path / "restored",
        }

    def pg_env(self) -> Dict[str, str]:
        """Process environment for the external PostgreSQL tools."""
        env = dict(os.environ)
        env.update(
            {
                "PGHOST": self.database_host,
                "PGPORT": str(self.database_port),
                "PGDATABASE": self.database_name,
                "PGUSER": self.database_user,
            }
        )
        if self.database_password:
            env["PGPASSWORD"] = self.database_password
        return env

    def connection_string(self, redact: bool = True) -> str:
        """libpq connection URI; the password is masked unless redact=False."""
        uri = f"postgresql://{quote(self.database_user)}"
        if self.database_password:
            uri += ":***" if redact else f":{quote(self.database_password)}"
        return f"{uri}@{self.database_host}:{self.database_port}/{self.database_name}"

    def wal_restore_command(self) -> str:
        """
        restore_command used by the recovered server to fetch archived WAL.

        An explicit restore_command always wins; otherwise the command is
        derived from where the WAL archive lives for the storage variant.
        """
        if self.restore_command:
            return self.restore_command
        if self.storage_type == StorageType.S3:
            return f'aws s3 cp "s3://{self.s3_bucket}/{self.s3_prefix}wal_archive/%f" "%p"'
        return f'cp "{self.wal_archive_path}/%f" "%p"'
