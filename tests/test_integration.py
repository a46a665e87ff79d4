# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration tests: FastAPI admin routes over a real chain store, local
storage and the fake PostgreSQL tools.
"""

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from pgchain.integrations.fastapi import register_pgchain_routes

PREFIX = "/admin/pgchain"
AUTH = {"Authorization": "Bearer test-api-key-12345"}


@pytest_asyncio.fixture
async def client(test_config, backup_state):
    app = FastAPI()
    register_pgchain_routes(app, test_config, backup_state, PREFIX)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_routes_require_api_key(client):
    response = await client.get(f"{PREFIX}/chains")
    assert response.status_code == 401

    response = await client.get(f"{PREFIX}/chains", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_backup_cycle_through_routes(client, test_config):
    response = await client.post(f"{PREFIX}/backups/incremental", headers=AUTH)
    assert response.status_code == 200
    first = response.json()
    assert first["kind"] == "full"

    response = await client.post(f"{PREFIX}/backups/incremental", headers=AUTH)
    assert response.status_code == 200
    inc = response.json()
    assert inc["kind"] == "incremental"
    assert inc["parent_manifest_path"] == first["manifest_path"]

    response = await client.get(f"{PREFIX}/chains", headers=AUTH)
    chains = response.json()
    assert len(chains) == 1
    assert chains[0]["chain_id"] == first["chain_id"]
    assert len(chains[0]["incrementals"]) == 1

    response = await client.get(f"{PREFIX}/restore/plan", headers=AUTH)
    assert response.status_code == 200
    plan = response.json()
    assert [r["kind"] for r in plan["records"]] == ["full", "incremental"]

    response = await client.get(f"{PREFIX}/status", headers=AUTH)
    status = response.json()
    assert status["chain_count"] == 1
    assert status["total_full_backups"] == 1
    assert status["total_incremental_backups"] == 1


@pytest.mark.asyncio
async def test_unknown_chain_is_404(client):
    response = await client.get(f"{PREFIX}/chains/missing", headers=AUTH)
    assert response.status_code == 404

    response = await client.delete(f"{PREFIX}/chains/missing", headers=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_restore_plan_without_chains_is_404(client):
    response = await client.get(f"{PREFIX}/restore/plan", headers=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_chain_route(client, backup_state):
    created = (await client.post(f"{PREFIX}/backups/full", headers=AUTH)).json()

    response = await client.delete(f"{PREFIX}/chains/{created['chain_id']}", headers=AUTH)

    assert response.status_code == 200
    assert not await backup_state["storage"].exists(created["backup_path"])
    assert (await client.get(f"{PREFIX}/chains", headers=AUTH)).json() == []


@pytest.mark.asyncio
async def test_cleanup_route(client, test_config):
    for _ in range(3):
        await client.post(f"{PREFIX}/backups/full", headers=AUTH)

    response = await client.post(f"{PREFIX}/cleanup", headers=AUTH)

    assert response.status_code == 200
    assert len(response.json()["deleted_chain_ids"]) == 3 - test_config.retention_count


@pytest.mark.asyncio
async def test_failed_backup_returns_error_detail(client, monkeypatch):
    monkeypatch.setenv("FAKE_BASEBACKUP_FAIL", "1")

    response = await client.post(f"{PREFIX}/backups/full", headers=AUTH)

    assert response.status_code == 500
    assert response.json()["detail"]["error"] == "BackupError"


@pytest.mark.asyncio
async def test_orphans_and_health(client, backup_state, temp_dir):
    stray = temp_dir / "stray"
    stray.write_text("left behind")
    await backup_state["storage"].upload(stray, "backups/full_20260101_000000_cafe00/PG_VERSION")

    response = await client.get(f"{PREFIX}/orphans", headers=AUTH)
    assert response.json()["orphans"] == ["backups/full_20260101_000000_cafe00/PG_VERSION"]

    response = await client.get(f"{PREFIX}/health", headers=AUTH)
    assert response.json()["status"] == "healthy"
