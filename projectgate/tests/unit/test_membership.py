from __future__ import annotations

import pytest

from projectgate.core.config import get_settings
from projectgate.core.errors import NoTenantsAvailable, NotAMember, TenantNotFound
from projectgate.domain.access import Role
from projectgate.persistence.db import SessionLocal
from projectgate.services.auth.principals import Principal
from projectgate.services.authz.context import build_security_context
from projectgate.services.authz.membership import get_user_projects, resolve_tenant
from projectgate.tests.utils.auth import SeededPrincipal, add_member, create_member, create_principal, create_project


def _principal(seeded: SeededPrincipal) -> Principal:
    return Principal(
        id=seeded.id,
        external_subject=seeded.subject,
        email=None,
        role=seeded.role,
        is_active=True,
    )


@pytest.mark.asyncio
async def test_member_resolves_requested_project_with_project_role() -> None:
    await create_project("p1")
    await create_project("p2")
    seeded = await create_principal(role=Role.STAFF)
    await add_member(seeded, "p1", Role.ADMIN)
    await add_member(seeded, "p2", Role.VIEWER)

    async with SessionLocal() as session:
        resolved = await resolve_tenant(session, _principal(seeded), "p2")
    assert resolved.tenant_id == "p2"
    assert resolved.role == Role.VIEWER
    assert resolved.all_tenant_ids == frozenset({"p1", "p2"})
    assert not resolved.fallback


@pytest.mark.asyncio
async def test_known_project_without_membership_is_forbidden() -> None:
    await create_project("p1")
    await create_project("p2")
    seeded = await create_member(Role.ADMIN, "p1")

    async with SessionLocal() as session:
        with pytest.raises(NotAMember) as exc_info:
            await resolve_tenant(session, _principal(seeded), "p2")
    assert exc_info.value.status_code == 403
    assert exc_info.value.message == "Not a member of this project"


@pytest.mark.asyncio
async def test_unknown_project_falls_back_to_first_membership() -> None:
    await create_project("p1")
    await create_project("p2")
    seeded = await create_member(Role.STAFF, "p1", "p2")

    async with SessionLocal() as session:
        resolved = await resolve_tenant(session, _principal(seeded), "does-not-exist")
    assert resolved.tenant_id == "p1"
    assert resolved.fallback


@pytest.mark.asyncio
async def test_unknown_project_without_memberships_is_not_found() -> None:
    seeded = await create_principal(role=Role.STAFF)
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFound) as exc_info:
            await resolve_tenant(session, _principal(seeded), "does-not-exist")
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_no_request_and_no_memberships() -> None:
    seeded = await create_principal(role=Role.CONTRACTOR)
    async with SessionLocal() as session:
        with pytest.raises(NoTenantsAvailable) as exc_info:
            await resolve_tenant(session, _principal(seeded), None)
    assert exc_info.value.message == "No projects available for user"


@pytest.mark.asyncio
async def test_admin_bypass_only_when_enabled(monkeypatch) -> None:
    await create_project("p1")
    admin = await create_principal(role=Role.ADMIN)
    staff = await create_principal(role=Role.STAFF)

    async with SessionLocal() as session:
        with pytest.raises(NotAMember):
            await resolve_tenant(session, _principal(admin), "p1")

    monkeypatch.setenv("AUTHZ_ADMIN_MEMBERSHIP_BYPASS", "true")
    get_settings.cache_clear()
    async with SessionLocal() as session:
        resolved = await resolve_tenant(session, _principal(admin), "p1")
        assert resolved.bypass
        assert resolved.role == Role.ADMIN
        assert resolved.all_tenant_ids == frozenset({"p1"})
        with pytest.raises(NotAMember):
            await resolve_tenant(session, _principal(staff), "p1")


@pytest.mark.asyncio
async def test_user_projects_are_memberships_only() -> None:
    await create_project("p1")
    await create_project("p2")
    await create_project("p3")
    seeded = await create_member(Role.STAFF, "p2", "p1")
    async with SessionLocal() as session:
        projects = await get_user_projects(session, seeded.id)
    assert sorted(projects) == ["p1", "p2"]


@pytest.mark.asyncio
async def test_security_context_carries_project_and_global_roles() -> None:
    await create_project("p1")
    seeded = await create_member(Role.STAFF, "p1", project_role=Role.CONTRACTOR)
    async with SessionLocal() as session:
        context = await build_security_context(session, _principal(seeded), "p1")
    assert context.principal_id == seeded.id
    assert context.active_tenant_id == "p1"
    assert context.role == Role.CONTRACTOR
    assert context.global_role == Role.STAFF
    assert context.all_tenant_ids == frozenset({"p1"})
