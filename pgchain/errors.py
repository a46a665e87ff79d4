# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for pgchain.

These helpers centralize wording for common configuration and metadata
errors so that all modules present consistent, actionable messages.
"""

from pathlib import Path


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "S3 storage is selected but no bucket is configured. "
        "Set the S3_BACKUP_BUCKET environment variable or pass s3_bucket=... to create_config()."
    )


def explain_missing_s3_credentials() -> str:
    """
    Explain that S3 credentials are missing.
    """

    return (
        "S3 storage requires credentials. Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY, "
        "or pass s3_use_ambient_credentials=True to rely on the instance role / AWS profile."
    )


def explain_invalid_storage_type_env(value: str | None) -> str:
    """
    Explain that PGCHAIN_STORAGE_TYPE is invalid.
    """

    return (
        f"Invalid PGCHAIN_STORAGE_TYPE value: {value!r}. "
        "Expected 'local' or 's3'."
    )


def explain_invalid_retention_count_env(value: str | None) -> str:
    """
    Explain that PGCHAIN_RETENTION_COUNT is invalid.
    """

    return (
        f"Invalid PGCHAIN_RETENTION_COUNT value: {value!r}. "
        "It must be a non-negative integer number of chains to keep."
    )


def explain_invalid_port_env(value: str | None) -> str:
    """
    Explain that PGPORT is invalid.
    """

    return f"Invalid PGPORT value: {value!r}. It must be an integer between 1 and 65535."


def explain_invalid_cron(field_name: str, value: str) -> str:
    """
    Explain that a schedule is not a valid five-field crontab expression.
    """

    return (
        f"Invalid {field_name}: {value!r}. "
        "Expected a five-field crontab expression such as '0 2 * * 0'."
    )


def explain_corrupt_metadata(metadata_path: Path, reason: str) -> str:
    """
    Explain that the chain metadata document could not be parsed.

    The document is left untouched; history is never discarded silently.
    """

    return (
        f"Backup chain metadata at {metadata_path} is corrupt ({reason}). "
        "The file has NOT been modified. Inspect or repair it, or call "
        "quarantine_metadata() to move it aside and start a new chain history."
    )
