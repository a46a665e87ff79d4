# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with pgchain Integration.

Runs the backup scheduler inside the app and exposes the admin routes
under /admin/pgchain.

Run with:
    uvicorn examples.basic_app:app

Environment variables:
    PGHOST, PGPORT, PGUSER, PGPASSWORD: replication connection
    S3_BACKUP_BUCKET: S3 bucket for backup artifacts
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: S3 credentials
    PGCHAIN_ADMIN_API_KEY: API key for admin endpoints
"""

import os

from fastapi import FastAPI

from pgchain.builder import (
    build_config,
    cleanup_on,
    create_empty_config,
    full_backups_on,
    incremental_backups_on,
    keep_chains,
    pipe,
    with_database,
    with_local_storage,
    with_s3_storage,
    with_tools,
)
from pgchain.integrations.fastapi import get_pgchain_state, pgchain_lifespan


def create_backup_config():
    """
    Weekly full backups, daily incrementals, four chains kept.

    Artifacts go to S3 when S3_BACKUP_BUCKET is set, otherwise to
    /var/lib/pgchain.
    """
    bucket = os.getenv("S3_BACKUP_BUCKET")

    steps = [
        lambda c: with_database(
            c,
            os.getenv("PGDATABASE", "postgres"),
            host=os.getenv("PGHOST", "localhost"),
            port=int(os.getenv("PGPORT", "5432")),
            user=os.getenv("PGUSER", "replicator"),
            password=os.getenv("PGPASSWORD"),
        ),
        lambda c: with_local_storage(c, os.getenv("BACKUP_STORAGE_PATH", "/var/lib/pgchain")),
        lambda c: with_tools(
            c,
            pg_basebackup="/usr/lib/postgresql/17/bin/pg_basebackup",
            pg_combinebackup="/usr/lib/postgresql/17/bin/pg_combinebackup",
        ),
        lambda c: full_backups_on(c, "0 2 * * 0"),
        lambda c: incremental_backups_on(c, "0 2 * * 1-6"),
        lambda c: cleanup_on(c, "30 3 * * *"),
        lambda c: keep_chains(c, 4),
    ]
    if bucket:
        steps.append(
            lambda c: with_s3_storage(
                c,
                bucket,
                region=os.getenv("AWS_REGION", "us-east-1"),
                prefix="postgres/",
                access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
                secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
                use_ambient_credentials=not os.getenv("AWS_ACCESS_KEY_ID"),
            )
        )

    return build_config(pipe(*steps)(create_empty_config()))


config = create_backup_config()

app = FastAPI(
    title="My App with pgchain",
    description="Example application running PostgreSQL backup chains",
    version="1.0.0",
    lifespan=lambda app: pgchain_lifespan(app, config),
)


@app.get("/")
async def root():
    return {"message": "Backups are managed under /admin/pgchain"}


@app.get("/backup-counters")
async def backup_counters():
    """Unauthenticated summary of this process's backup counters."""
    state = get_pgchain_state(app)
    return {
        "full_backups": state["total_full_backups"],
        "incremental_backups": state["total_incremental_backups"],
        "last_backup_at": state["last_backup_at"].isoformat() if state["last_backup_at"] else None,
    }
