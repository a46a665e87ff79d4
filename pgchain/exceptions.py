# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Exceptions - Custom exceptions for the pgchain package.
"""


class PGChainError(Exception):
    """Base exception for all pgchain errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PGChainError):
    """Raised when configuration is invalid."""

    pass


class ChainStoreError(PGChainError):
    """Raised when the chain metadata document cannot be read or written."""

    pass


class ChainNotFoundError(ChainStoreError):
    """Raised when a chain id is not present in the metadata document."""

    def __init__(self, chain_id: str):
        self.chain_id = chain_id
        super().__init__(f"Chain not found: {chain_id}", details={"chain_id": chain_id})


class MetadataCorruptError(ChainStoreError):
    """Raised when the metadata document exists but cannot be parsed."""

    pass


class ChainConflictError(ChainStoreError):
    """Raised when an incremental's parent manifest is no longer the chain tip."""

    pass


class MetadataLockError(ChainStoreError):
    """Raised when the metadata write lock cannot be acquired."""

    pass


class BackupError(PGChainError):
    """Raised when backup operations fail."""

    pass


class RestoreError(PGChainError):
    """Raised when restore operations fail."""

    pass


class StorageError(PGChainError):
    """Raised when a storage backend operation fails."""

    def __init__(self, message: str, operation: str, path: str, details: dict | None = None):
        self.operation = operation
        self.path = path
        merged = {"operation": operation, "path": path}
        merged.update(details or {})
        super().__init__(message, details=merged)
