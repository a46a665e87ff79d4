# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup and restore orchestration.
"""

from pgchain.backup.manager import (
    BackupResult,
    build_basebackup_command,
    perform_full_backup,
    perform_incremental_backup,
)

from pgchain.backup.restore import (
    RestorePlan,
    RestoreResult,
    configure_recovery,
    plan_restore,
    restore_backup,
)

from pgchain.backup.tools import (
    ToolResult,
    artifact_stamp,
    run_tool,
    scratch_directory,
)

__all__ = [
    # Backup
    "BackupResult",
    "build_basebackup_command",
    "perform_full_backup",
    "perform_incremental_backup",
    # Restore
    "RestorePlan",
    "RestoreResult",
    "configure_recovery",
    "plan_restore",
    "restore_backup",
    # Tools
    "ToolResult",
    "artifact_stamp",
    "run_tool",
    "scratch_directory",
]
