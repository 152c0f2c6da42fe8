from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.domain.access import Role
from projectgate.services.auth.principals import Principal
from projectgate.services.authz.membership import ResolvedTenant, resolve_tenant


@dataclass(frozen=True)
class SecurityContext:
    # Rebuilt per request; never persisted.
    principal_id: str
    active_tenant_id: str
    all_tenant_ids: frozenset[str]
    role: Role
    global_role: Role
    fallback: bool = False
    bypass: bool = False


def context_from_resolution(principal: Principal, resolved: ResolvedTenant) -> SecurityContext:
    return SecurityContext(
        principal_id=principal.id,
        active_tenant_id=resolved.tenant_id,
        all_tenant_ids=resolved.all_tenant_ids,
        role=resolved.role,
        global_role=principal.role,
        fallback=resolved.fallback,
        bypass=resolved.bypass,
    )


async def build_security_context(
    session: AsyncSession,
    principal: Principal,
    requested_tenant_id: str | None,
) -> SecurityContext:
    # Membership failures propagate; module access is checked separately by the caller.
    resolved = await resolve_tenant(session, principal, requested_tenant_id)
    return context_from_resolution(principal, resolved)
