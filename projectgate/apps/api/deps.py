from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, AsyncGenerator, Iterable, Mapping

from fastapi import Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.apps.api.rate_limit import enforce_rate_limit, get_rate_limit_store
from projectgate.core.config import get_settings
from projectgate.core.errors import (
    AuthenticationFailure,
    InsufficientRolePrivilege,
    MembershipFailure,
    TenantNotFound,
    ValidationFailure,
)
from projectgate.core.sanitize import collect_sensitive_values
from projectgate.domain.access import Intent, Module, Role
from projectgate.persistence.db import SessionLocal
from projectgate.persistence.scoped import RESOURCE_SPECS, ScopedRepository
from projectgate.services.audit import (
    EVENT_MEMBERSHIP_BYPASS,
    EVENT_TENANT_FALLBACK,
    OUTCOME_ALLOW,
    OUTCOME_DENY,
    AuditSink,
    DecisionLogger,
)
from projectgate.services.auth.identity import IdentityVerifier, parse_bearer_token
from projectgate.services.auth.principals import Principal, resolve_principal
from projectgate.services.authz.context import SecurityContext, context_from_resolution
from projectgate.services.authz.membership import resolve_tenant
from projectgate.services.authz.permissions import AccessDecision, check_module_access
from projectgate.services.authz.redaction import redact, redact_many
from projectgate.services.rate_limit import RateLimitStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One session per request; closing it rolls back anything left uncommitted.
    async with SessionLocal() as session:
        yield session


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink


def get_identity_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.identity_verifier


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


async def _sensitive_body_values(request: Request) -> list[str]:
    # Values under sensitive keys in the JSON body are scrubbed from every audit record.
    if request.method in {"GET", "HEAD", "OPTIONS"}:
        return []
    body = await request.body()
    if len(body) > get_settings().max_body_bytes:
        raise ValidationFailure("Request body too large")
    content_type = (request.headers.get("content-type") or "").lower()
    if not body or not content_type.startswith("application/json"):
        return []
    try:
        payload = json.loads(body)
    except ValueError:
        return []
    return collect_sensitive_values(payload)


async def get_decision_logger(
    request: Request,
    sink: AuditSink = Depends(get_audit_sink),
) -> DecisionLogger:
    sensitive_values = await _sensitive_body_values(request)
    return DecisionLogger.for_request(request, sink, sensitive_values=sensitive_values)


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Principal:
    # Every authentication failure collapses to one public message; the kind goes to the audit trail.
    try:
        token = parse_bearer_token(request.headers.get("Authorization"))
        claims = await verifier.verify(token)
        return await resolve_principal(db, claims.subject)
    except AuthenticationFailure as exc:
        await audit.log_auth_failure(kind=exc.kind, metadata=_request_metadata(request))
        raise


async def get_rate_limited_principal(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    store: RateLimitStore = Depends(get_rate_limit_store),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> Principal:
    await enforce_rate_limit(
        request=request,
        response=response,
        principal=principal,
        store=store,
        audit=audit,
    )
    return principal


def requested_project_id(
    project_id: str | None = Query(default=None, max_length=128),
) -> str | None:
    return project_id or None


async def build_request_context(
    *,
    request: Request,
    principal: Principal,
    project_id: str | None,
    db: AsyncSession,
    audit: DecisionLogger,
    strict: bool = False,
) -> SecurityContext:
    # strict: the project id names a resource (path parameter), so no fallback is allowed.
    try:
        resolved = await resolve_tenant(db, principal, project_id)
        if strict and resolved.fallback:
            raise TenantNotFound("Project not found")
    except (MembershipFailure, TenantNotFound) as exc:
        await audit.log_event(
            event_type="membership.denied",
            outcome=OUTCOME_DENY,
            principal_id=principal.id,
            actor_role=principal.role.value,
            tenant_id=project_id,
            resource_type="project",
            resource_id=project_id,
            reason=exc.message,
            metadata=_request_metadata(request),
            error_code=exc.code,
        )
        raise
    if resolved.bypass:
        await audit.log_event(
            event_type=EVENT_MEMBERSHIP_BYPASS,
            outcome=OUTCOME_ALLOW,
            principal_id=principal.id,
            actor_role=principal.role.value,
            tenant_id=resolved.tenant_id,
            resource_type="project",
            resource_id=resolved.tenant_id,
            reason="Global admin entered project without membership",
            metadata=_request_metadata(request),
        )
    if resolved.fallback:
        await audit.log_event(
            event_type=EVENT_TENANT_FALLBACK,
            outcome=OUTCOME_ALLOW,
            principal_id=principal.id,
            actor_role=resolved.role.value,
            tenant_id=resolved.tenant_id,
            resource_type="project",
            resource_id=resolved.tenant_id,
            reason="Requested project not found; using first available project",
            metadata={**_request_metadata(request), "requested_project_id": project_id},
        )
    return context_from_resolution(principal, resolved)


async def get_security_context(
    request: Request,
    principal: Principal = Depends(get_rate_limited_principal),
    project_id: str | None = Depends(requested_project_id),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> SecurityContext:
    return await build_request_context(
        request=request,
        principal=principal,
        project_id=project_id,
        db=db,
        audit=audit,
    )


async def get_project_path_context(
    request: Request,
    project_id: str,
    principal: Principal = Depends(get_rate_limited_principal),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> SecurityContext:
    # Routes addressing /projects/{project_id} never fall back to another project.
    return await build_request_context(
        request=request,
        principal=principal,
        project_id=project_id,
        db=db,
        audit=audit,
        strict=True,
    )


@dataclass(frozen=True)
class ModuleScope:
    """Everything a module handler may touch for one request.

    The repository is already confined to ``context.active_tenant_id``; the
    raw database session is not exposed.
    """

    context: SecurityContext
    module: Module
    decision: AccessDecision
    repository: ScopedRepository

    def redact(self, row: Mapping[str, Any]) -> dict[str, Any]:
        return redact(row, self.context.role, self.module)

    def redact_many(self, rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        return redact_many(rows, self.context.role, self.module)

    def echo(self, row: Mapping[str, Any]) -> dict[str, Any]:
        # Create only: the caller just supplied these values.
        return dict(row)


def module_scope(module: Module, intent: Intent):
    # Dependency factory: membership, then module permission, then a scoped repository.
    async def _dependency(
        context: SecurityContext = Depends(get_security_context),
        db: AsyncSession = Depends(get_db),
        audit: DecisionLogger = Depends(get_decision_logger),
    ) -> ModuleScope:
        decision = await check_module_access(db, context=context, module=module, intent=intent, audit=audit)
        repository = ScopedRepository(db, context, RESOURCE_SPECS[module], audit)
        return ModuleScope(context=context, module=module, decision=decision, repository=repository)

    return _dependency


async def require_global_admin(
    request: Request,
    principal: Principal = Depends(get_rate_limited_principal),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> Principal:
    # Project and principal administration is reserved for global admins.
    if principal.role != Role.ADMIN:
        error = InsufficientRolePrivilege()
        await audit.log_event(
            event_type="admin.forbidden",
            outcome=OUTCOME_DENY,
            principal_id=principal.id,
            actor_role=principal.role.value,
            resource_type="admin",
            reason=error.message,
            metadata=_request_metadata(request),
            error_code=error.code,
        )
        raise error
    return principal


async def _ensure_project_admin(request: Request, context: SecurityContext, audit: DecisionLogger) -> SecurityContext:
    # Project-level administration requires the admin role within the active project.
    if context.role != Role.ADMIN:
        error = InsufficientRolePrivilege()
        await audit.log_event(
            event_type="project_admin.forbidden",
            outcome=OUTCOME_DENY,
            principal_id=context.principal_id,
            actor_role=context.role.value,
            tenant_id=context.active_tenant_id,
            resource_type="project",
            resource_id=context.active_tenant_id,
            reason=error.message,
            metadata=_request_metadata(request),
            error_code=error.code,
        )
        raise error
    return context


async def require_project_admin(
    request: Request,
    context: SecurityContext = Depends(get_security_context),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> SecurityContext:
    return await _ensure_project_admin(request, context, audit)


async def require_project_path_admin(
    request: Request,
    context: SecurityContext = Depends(get_project_path_context),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> SecurityContext:
    return await _ensure_project_admin(request, context, audit)
