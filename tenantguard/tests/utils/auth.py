from __future__ import annotations

from uuid import uuid4

from tenantguard.domain.entities import User, WorkspaceMembership
from tenantguard.services.container import Services


TEST_PASSWORD = "correct-horse-battery"


async def create_test_user(
    services: Services,
    *,
    email: str | None = None,
    password: str | None = TEST_PASSWORD,
    is_super_admin: bool = False,
) -> User:
    # Register a user through the directory so hashing and audit match production.
    return await services.users.create_user(
        email or f"user-{uuid4().hex[:8]}@example.com",
        password,
        "Test User",
        is_super_admin=is_super_admin,
    )


async def seed_membership(
    services: Services,
    workspace_id: str,
    user_id: str,
    role: str,
) -> WorkspaceMembership:
    # Write a membership version directly, bypassing invite rules.
    return await services.store.put_version(
        WorkspaceMembership(workspace_id=workspace_id, user_id=user_id, role=role)
    )


async def seed_workspace(services: Services, roles: dict[str, str]) -> tuple[str, dict[str, str]]:
    # Create one user per name with the given role; returns (workspace_id, name -> user_id).
    workspace_id = f"ws-{uuid4().hex[:8]}"
    user_ids: dict[str, str] = {}
    for name, role in roles.items():
        user = await create_test_user(services, email=f"{name}-{uuid4().hex[:6]}@example.com")
        await seed_membership(services, workspace_id, user.id, role)
        user_ids[name] = user.id
    return workspace_id, user_ids


async def login_session(services: Services, user_id: str) -> str:
    # Open a session for an existing user and return its bearer token.
    _session_id, token = await services.sessions.create_session(user_id)
    return token


async def create_test_api_key(
    services: Services,
    workspace_id: str,
    creator_id: str,
    scopes: list[str],
    *,
    name: str = "test-key",
) -> tuple[str, str]:
    # Issue a key through the manager and return (raw_key, key_id).
    raw_key, api_key = await services.api_keys.create(workspace_id, creator_id, scopes, name)
    return raw_key, api_key.id
