# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain - PostgreSQL backup chain manager.

Organizes physical backups into chains of one full backup followed by
incrementals, keeps the chain metadata durable, selects what a
point-in-time restore needs, enforces retention, and moves artifacts
through local or S3 storage.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from pgchain.builder import create_config
from pgchain.env import create_config_from_env

# Runtime state
from pgchain.core import (
    get_status,
    initialize_backup_state,
    shutdown_backup_state,
)

# Operations
from pgchain.backup import (
    perform_full_backup,
    perform_incremental_backup,
    plan_restore,
    restore_backup,
)

from pgchain.chains import (
    cleanup_old_chains,
    delete_chain,
    get_chain,
    get_latest_chain,
    get_latest_manifest,
    get_restore_chain,
    list_chains,
    register_full_backup,
    register_incremental_backup,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "create_config",
    "create_config_from_env",
    # State
    "initialize_backup_state",
    "get_status",
    "shutdown_backup_state",
    # Backup and restore
    "perform_full_backup",
    "perform_incremental_backup",
    "plan_restore",
    "restore_backup",
    # Chain store
    "register_full_backup",
    "register_incremental_backup",
    "list_chains",
    "get_chain",
    "get_latest_chain",
    "get_latest_manifest",
    "get_restore_chain",
    "cleanup_old_chains",
    "delete_chain",
]
