from __future__ import annotations

import argparse

import pytest

from scripts.compact_store import compact
from scripts.create_api_key import _create_key
from scripts.revoke_api_key import _revoke_key
from tenantguard.core.config import get_settings
from tenantguard.domain.entities import WorkspaceMembership
from tenantguard.services.container import build_services


@pytest.fixture
def sqlite_env(monkeypatch, tmp_path) -> None:
    # Point the scripts at a throwaway SQLite store that creates its own schema.
    monkeypatch.setenv("STORE_BACKEND", "sql")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'scripts.db'}")
    monkeypatch.setenv("STORE_AUTO_CREATE_SCHEMA", "true")
    get_settings.cache_clear()


async def _seed_owner(workspace_id: str, user_id: str) -> None:
    # Write an owner membership so the creator may issue keys.
    services = build_services()
    try:
        await services.startup()
        await services.store.put_version(WorkspaceMembership(workspace_id=workspace_id, user_id=user_id, role="owner"))
    finally:
        await services.aclose()


@pytest.mark.asyncio
async def test_create_revoke_and_compact_scripts(sqlite_env, capsys) -> None:
    await _seed_owner("ws-script", "u-owner")
    args = argparse.Namespace(
        workspace="ws-script",
        creator="u-owner",
        name="ci",
        scopes=["events.track"],
        description="",
        expires_days=30,
    )

    assert await _create_key(args) == 0
    output = capsys.readouterr().out
    key_id = next(line.split(":", 1)[1].strip() for line in output.splitlines() if "key_id:" in line)
    assert "stam_live_" in output

    assert await _revoke_key(key_id, "ops") == 0
    assert f"Revoked API key {key_id}" in capsys.readouterr().out

    await compact()
    assert "compacted_versions=0" in capsys.readouterr().out
