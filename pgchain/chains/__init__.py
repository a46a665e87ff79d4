# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Chain Store - Durable chain metadata, restore selection and retention.
"""

from pgchain.chains.schema import (
    BackupRecord,
    Chain,
    ChainDocument,
    FullRecord,
    IncrementalRecord,
    SCHEMA_VERSION,
)

from pgchain.chains.store import (
    cleanup_old_chains,
    delete_chain,
    find_orphans,
    get_chain,
    get_latest_chain,
    get_latest_manifest,
    get_restore_chain,
    list_chains,
    load_document,
    purge_orphans,
    quarantine_metadata,
    register_full_backup,
    register_incremental_backup,
)

from pgchain.chains.lock import metadata_lock

__all__ = [
    # Types
    "BackupRecord",
    "Chain",
    "ChainDocument",
    "FullRecord",
    "IncrementalRecord",
    "SCHEMA_VERSION",
    # Store
    "register_full_backup",
    "register_incremental_backup",
    "list_chains",
    "get_chain",
    "get_latest_chain",
    "get_latest_manifest",
    "get_restore_chain",
    "cleanup_old_chains",
    "delete_chain",
    "find_orphans",
    "purge_orphans",
    "load_document",
    "quarantine_metadata",
    # Locking
    "metadata_lock",
]
