from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.core.errors import (
    InsufficientPermission,
    InsufficientRolePrivilege,
    NoModuleAccess,
    NotAMember,
    PermissionFailure,
)
from projectgate.domain.access import (
    CAPABILITY_ACTION,
    INTENT_CAPABILITY,
    Capability,
    Intent,
    Module,
    Role,
    capability_from_flags,
)
from projectgate.persistence.repos import memberships as memberships_repo
from projectgate.services.audit import OUTCOME_ALLOW, OUTCOME_DENY, DecisionLogger
from projectgate.services.auth.principals import Principal
from projectgate.services.authz.context import SecurityContext
from projectgate.services.authz.membership import get_membership
from projectgate.services.authz.matrix import default_capabilities, is_role_barred


SOURCE_GRANT = "grant"
SOURCE_ROLE_DEFAULT = "role_default"
SOURCE_ROLE_BAR = "role_bar"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    module: Module
    intent: Intent
    role: Role
    capabilities: Capability
    source: str
    reason: str
    error: PermissionFailure | None = None


async def resolve_capabilities(
    session: AsyncSession,
    *,
    principal_id: str,
    tenant_id: str,
    role: Role,
    module: Module,
) -> tuple[Capability, str]:
    # An explicit grant replaces the role default entirely, including all-false grants.
    grant = await memberships_repo.get_grant(
        session, user_id=principal_id, project_id=tenant_id, module=module.value
    )
    if grant is not None:
        caps = capability_from_flags(
            can_view=grant.can_view,
            can_edit=grant.can_edit,
            can_upload=grant.can_upload,
            can_request=grant.can_request,
        )
        return caps, SOURCE_GRANT
    return default_capabilities(role, module), SOURCE_ROLE_DEFAULT


def evaluate(
    *,
    role: Role,
    module: Module,
    intent: Intent,
    capabilities: Capability,
    source: str,
) -> AccessDecision:
    # Pure decision over an already-resolved capability set.
    if is_role_barred(role, module, intent):
        error: PermissionFailure = InsufficientRolePrivilege()
        return AccessDecision(False, module, intent, role, capabilities, SOURCE_ROLE_BAR, error.message, error)
    if capabilities == Capability.NONE:
        error = NoModuleAccess(module.value)
        return AccessDecision(False, module, intent, role, capabilities, source, error.message, error)
    required = INTENT_CAPABILITY[intent]
    if not capabilities & required:
        error = InsufficientPermission(module.value, CAPABILITY_ACTION[required])
        return AccessDecision(False, module, intent, role, capabilities, source, error.message, error)
    return AccessDecision(True, module, intent, role, capabilities, source, f"{intent.value} {module.value} allowed")


async def _decide(
    session: AsyncSession,
    *,
    context: SecurityContext,
    module: Module,
    intent: Intent,
    audit: DecisionLogger,
) -> AccessDecision:
    # Writes exactly one policy decision record, allowed or denied.
    if is_role_barred(context.role, module, intent):
        capabilities, source = Capability.NONE, SOURCE_ROLE_BAR
    else:
        capabilities, source = await resolve_capabilities(
            session,
            principal_id=context.principal_id,
            tenant_id=context.active_tenant_id,
            role=context.role,
            module=module,
        )
    decision = evaluate(
        role=context.role,
        module=module,
        intent=intent,
        capabilities=capabilities,
        source=source,
    )
    await audit.log_policy_decision(
        principal_id=context.principal_id,
        actor_role=context.role.value,
        tenant_id=context.active_tenant_id,
        module=module.value,
        intent=intent.value,
        outcome=OUTCOME_ALLOW if decision.allowed else OUTCOME_DENY,
        reason=decision.reason,
        error_code=decision.error.code if decision.error else None,
        metadata={"source": decision.source, "capabilities": int(decision.capabilities)},
    )
    return decision


async def check_module_access(
    session: AsyncSession,
    *,
    context: SecurityContext,
    module: Module,
    intent: Intent,
    audit: DecisionLogger,
) -> AccessDecision:
    decision = await _decide(session, context=context, module=module, intent=intent, audit=audit)
    if decision.error is not None:
        raise decision.error
    return decision


async def check_module_access_many(
    session: AsyncSession,
    *,
    principal: Principal,
    tenant_id: str,
    checks: Iterable[tuple[Module, Intent]],
    audit: DecisionLogger,
) -> list[AccessDecision]:
    """Check several module/intent pairs in one project.

    Membership is looked up once. Every pair is evaluated and logged, then the
    first denial in the order given is raised.
    """
    membership = await get_membership(session, principal.id, tenant_id)
    if membership is None:
        await audit.log_event(
            event_type="membership.denied",
            outcome=OUTCOME_DENY,
            principal_id=principal.id,
            actor_role=principal.role.value,
            tenant_id=tenant_id,
            resource_type="project",
            resource_id=tenant_id,
            reason=NotAMember.message,
            error_code=NotAMember.code,
        )
        raise NotAMember()
    context = SecurityContext(
        principal_id=principal.id,
        active_tenant_id=tenant_id,
        all_tenant_ids=frozenset({tenant_id}),
        role=membership.role,
        global_role=principal.role,
    )
    decisions = [
        await _decide(session, context=context, module=module, intent=intent, audit=audit)
        for module, intent in checks
    ]
    for decision in decisions:
        if decision.error is not None:
            raise decision.error
    return decisions


async def get_effective_permissions(
    session: AsyncSession,
    *,
    principal_id: str,
    tenant_id: str,
    role: Role,
) -> dict[Module, frozenset[Intent]]:
    # Summary of every intent the principal may exercise per module; no audit side effects.
    summary: dict[Module, frozenset[Intent]] = {}
    for module in Module:
        capabilities, source = await resolve_capabilities(
            session, principal_id=principal_id, tenant_id=tenant_id, role=role, module=module
        )
        allowed = frozenset(
            intent
            for intent in Intent
            if evaluate(role=role, module=module, intent=intent, capabilities=capabilities, source=source).allowed
        )
        summary[module] = allowed
    return summary
