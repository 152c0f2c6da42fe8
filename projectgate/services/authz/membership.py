from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.core.config import get_settings
from projectgate.core.errors import NoTenantsAvailable, NotAMember, TenantNotFound
from projectgate.domain.access import Role, normalize_role
from projectgate.persistence.repos import memberships as memberships_repo
from projectgate.services.auth.principals import Principal


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Membership:
    project_id: str
    role: Role


@dataclass(frozen=True)
class ResolvedTenant:
    tenant_id: str
    role: Role
    all_tenant_ids: frozenset[str]
    # Requested id did not exist and the first available project was used.
    fallback: bool = False
    # Global-admin entry without a membership row.
    bypass: bool = False


async def get_membership(session: AsyncSession, principal_id: str, tenant_id: str) -> Membership | None:
    row = await memberships_repo.get_membership(session, user_id=principal_id, project_id=tenant_id)
    if row is None:
        return None
    return Membership(project_id=row.project_id, role=normalize_role(row.role))


async def list_memberships(session: AsyncSession, principal_id: str) -> list[Membership]:
    rows = await memberships_repo.list_memberships(session, user_id=principal_id)
    return [Membership(project_id=row.project_id, role=normalize_role(row.role)) for row in rows]


async def get_user_projects(session: AsyncSession, principal_id: str) -> list[str]:
    # Only projects the principal is a member of, oldest membership first.
    return [membership.project_id for membership in await list_memberships(session, principal_id)]


async def resolve_tenant(
    session: AsyncSession,
    principal: Principal,
    requested_tenant_id: str | None,
) -> ResolvedTenant:
    """Pick the active project for a request.

    * requested + member: that project with the membership role.
    * requested + project exists + not a member: ``NotAMember``, unless the
      admin bypass setting is on and the principal is a global admin.
    * requested + project unknown: first available project (logged), or
      ``TenantNotFound`` when the principal has none.
    * absent: first available project, or ``NoTenantsAvailable``.
    """
    memberships = await list_memberships(session, principal.id)
    all_tenant_ids = frozenset(m.project_id for m in memberships)

    if requested_tenant_id:
        for membership in memberships:
            if membership.project_id == requested_tenant_id:
                return ResolvedTenant(
                    tenant_id=membership.project_id,
                    role=membership.role,
                    all_tenant_ids=all_tenant_ids,
                )
        project = await memberships_repo.get_project(session, requested_tenant_id)
        if project is not None:
            settings = get_settings()
            if settings.authz_admin_membership_bypass and principal.role == Role.ADMIN:
                return ResolvedTenant(
                    tenant_id=project.id,
                    role=Role.ADMIN,
                    all_tenant_ids=all_tenant_ids | {project.id},
                    bypass=True,
                )
            raise NotAMember()
        if not memberships:
            raise TenantNotFound()
        fallback = memberships[0]
        logger.warning(
            "tenant_fallback principal_id=%s requested=%s resolved=%s",
            principal.id,
            requested_tenant_id,
            fallback.project_id,
        )
        return ResolvedTenant(
            tenant_id=fallback.project_id,
            role=fallback.role,
            all_tenant_ids=all_tenant_ids,
            fallback=True,
        )

    if not memberships:
        raise NoTenantsAvailable()
    first = memberships[0]
    return ResolvedTenant(tenant_id=first.project_id, role=first.role, all_tenant_ids=all_tenant_ids)
