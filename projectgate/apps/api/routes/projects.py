from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.apps.api.deps import (
    get_db,
    get_decision_logger,
    get_project_path_context,
    get_rate_limited_principal,
    require_global_admin,
    require_project_path_admin,
)
from projectgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from projectgate.apps.api.response import SuccessEnvelope, success_response
from projectgate.core.config import get_settings
from projectgate.core.errors import (
    NoTenantsAvailable,
    ResourceNotFound,
    StorageFailure,
    ValidationFailure,
)
from projectgate.domain.access import Module, Role, normalize_module
from projectgate.domain.models import ModuleGrant, Project, User
from projectgate.persistence.repos import memberships as memberships_repo
from projectgate.services.audit import OUTCOME_ALLOW, DecisionLogger
from projectgate.services.auth.principals import Principal
from projectgate.services.authz.context import SecurityContext
from projectgate.services.authz.membership import list_memberships
from projectgate.services.authz.permissions import get_effective_permissions


router = APIRouter(prefix="/projects", tags=["projects"], responses=DEFAULT_ERROR_RESPONSES)


class ProjectResponse(BaseModel):
    id: str
    name: str
    status: str
    role: str | None = None
    created_at: str | None = None
    archived_at: str | None = None


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    id: str | None = Field(default=None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")

    model_config = {"extra": "forbid"}


class MembershipRequest(BaseModel):
    role: Role

    model_config = {"extra": "forbid"}


class MembershipResponse(BaseModel):
    project_id: str
    user_id: str
    role: str
    created: bool


class ModuleGrantRequest(BaseModel):
    can_view: bool = False
    can_edit: bool = False
    can_upload: bool = False
    can_request: bool = False

    model_config = {"extra": "forbid"}


class ModuleGrantResponse(BaseModel):
    project_id: str
    user_id: str
    module: str
    can_view: bool
    can_edit: bool
    can_upload: bool
    can_request: bool


class MemberSummary(BaseModel):
    user_id: str
    role: str
    grants: list[ModuleGrantResponse]


class PermissionsResponse(BaseModel):
    project_id: str
    role: str
    modules: dict[str, list[str]]


def _to_response(project: Project, role: str | None = None) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        status=project.status,
        role=role,
        created_at=project.created_at.isoformat() if project.created_at else None,
        archived_at=project.archived_at.isoformat() if project.archived_at else None,
    )


def _grant_response(grant: ModuleGrant) -> ModuleGrantResponse:
    return ModuleGrantResponse(
        project_id=grant.project_id,
        user_id=grant.user_id,
        module=grant.module,
        can_view=grant.can_view,
        can_edit=grant.can_edit,
        can_upload=grant.can_upload,
        can_request=grant.can_request,
    )


def _parse_module(module: str) -> Module:
    try:
        return normalize_module(module)
    except ValueError as exc:
        raise ValidationFailure(f"Unsupported module: {module}") from exc


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc


@router.get("", response_model=SuccessEnvelope[list[ProjectResponse]])
async def list_projects(
    request: Request,
    principal: Principal = Depends(get_rate_limited_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The full membership set; never projects the caller does not belong to.
    memberships = await list_memberships(db, principal.id)
    roles = {membership.project_id: membership.role.value for membership in memberships}
    if get_settings().authz_admin_membership_bypass and principal.role == Role.ADMIN:
        projects = await memberships_repo.list_all_projects(db)
    else:
        if not memberships:
            raise NoTenantsAvailable()
        projects = await memberships_repo.list_projects_by_ids(db, list(roles))
    data = [_to_response(project, roles.get(project.id)).model_dump() for project in projects]
    return success_response(request=request, data=data)


@router.post("", status_code=201, response_model=SuccessEnvelope[ProjectResponse])
async def create_project(
    request: Request,
    payload: ProjectCreateRequest,
    principal: Principal = Depends(require_global_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    # The creator becomes the first project admin.
    if payload.id and await memberships_repo.get_project(db, payload.id) is not None:
        raise ValidationFailure("Project id already exists")
    try:
        project = await memberships_repo.create_project(db, name=payload.name, project_id=payload.id)
        await memberships_repo.upsert_membership(
            db, user_id=principal.id, project_id=project.id, role=Role.ADMIN.value
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await _commit(db)
    await db.refresh(project)
    await audit.log_event(
        event_type="project.created",
        outcome=OUTCOME_ALLOW,
        principal_id=principal.id,
        actor_role=principal.role.value,
        tenant_id=project.id,
        resource_type="project",
        resource_id=project.id,
        reason="Project created successfully",
        metadata={"fields": ["name"]},
    )
    return success_response(request=request, data=_to_response(project, Role.ADMIN.value).model_dump())


@router.get("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def get_project(
    request: Request,
    context: SecurityContext = Depends(get_project_path_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await memberships_repo.get_project(db, context.active_tenant_id)
    if project is None:
        raise ResourceNotFound("Project not found")
    return success_response(request=request, data=_to_response(project, context.role.value).model_dump())


@router.post("/{project_id}/archive", response_model=SuccessEnvelope[ProjectResponse])
async def archive_project(
    request: Request,
    context: SecurityContext = Depends(require_project_path_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    project = await memberships_repo.get_project(db, context.active_tenant_id)
    if project is None:
        raise ResourceNotFound("Project not found")
    if project.status != "archived":
        await memberships_repo.archive_project(db, project)
        await _commit(db)
        await db.refresh(project)
        await audit.log_event(
            event_type="project.archived",
            outcome=OUTCOME_ALLOW,
            principal_id=context.principal_id,
            actor_role=context.role.value,
            tenant_id=project.id,
            resource_type="project",
            resource_id=project.id,
            reason="Project archived successfully",
        )
    return success_response(request=request, data=_to_response(project, context.role.value).model_dump())


@router.get("/{project_id}/permissions", response_model=SuccessEnvelope[PermissionsResponse])
async def get_permissions(
    request: Request,
    context: SecurityContext = Depends(get_project_path_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Summary for UI gating; enforcement still happens per request.
    summary = await get_effective_permissions(
        db,
        principal_id=context.principal_id,
        tenant_id=context.active_tenant_id,
        role=context.role,
    )
    modules = {
        module.value: sorted(intent.value for intent in intents) for module, intents in summary.items()
    }
    payload = PermissionsResponse(project_id=context.active_tenant_id, role=context.role.value, modules=modules)
    return success_response(request=request, data=payload.model_dump())


@router.get("/{project_id}/members", response_model=SuccessEnvelope[list[MemberSummary]])
async def list_members(
    request: Request,
    context: SecurityContext = Depends(require_project_path_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    members = await memberships_repo.list_project_members(db, project_id=context.active_tenant_id)
    data = []
    for member in members:
        grants = await memberships_repo.list_grants(db, user_id=member.user_id, project_id=member.project_id)
        summary = MemberSummary(
            user_id=member.user_id,
            role=member.role,
            grants=[_grant_response(grant) for grant in sorted(grants, key=lambda g: g.module)],
        )
        data.append(summary.model_dump())
    return success_response(request=request, data=data)


@router.put("/{project_id}/members/{user_id}", response_model=SuccessEnvelope[MembershipResponse])
async def put_member(
    user_id: str,
    request: Request,
    payload: MembershipRequest,
    context: SecurityContext = Depends(require_project_path_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    if await db.get(User, user_id) is None:
        raise ResourceNotFound("User not found")
    try:
        membership, created = await memberships_repo.upsert_membership(
            db, user_id=user_id, project_id=context.active_tenant_id, role=payload.role.value
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await _commit(db)
    await audit.log_event(
        event_type="membership.created" if created else "membership.updated",
        outcome=OUTCOME_ALLOW,
        principal_id=context.principal_id,
        actor_role=context.role.value,
        tenant_id=context.active_tenant_id,
        resource_type="project_member",
        resource_id=user_id,
        reason="Membership created successfully" if created else "Membership updated successfully",
        metadata={"role": payload.role.value},
    )
    data = MembershipResponse(
        project_id=membership.project_id,
        user_id=membership.user_id,
        role=membership.role,
        created=created,
    )
    return success_response(request=request, data=data.model_dump())


@router.put(
    "/{project_id}/members/{user_id}/modules/{module}",
    response_model=SuccessEnvelope[ModuleGrantResponse],
)
async def put_module_grant(
    user_id: str,
    module: str,
    request: Request,
    payload: ModuleGrantRequest,
    context: SecurityContext = Depends(require_project_path_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    # A grant replaces the role default for this module, including all-false grants.
    resolved_module = _parse_module(module)
    membership = await memberships_repo.get_membership(db, user_id=user_id, project_id=context.active_tenant_id)
    if membership is None:
        raise ResourceNotFound("Membership not found")
    try:
        grant = await memberships_repo.upsert_grant(
            db,
            user_id=user_id,
            project_id=context.active_tenant_id,
            module=resolved_module.value,
            **payload.model_dump(),
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await _commit(db)
    flags: dict[str, Any] = payload.model_dump()
    await audit.log_event(
        event_type="module_grant.updated",
        outcome=OUTCOME_ALLOW,
        principal_id=context.principal_id,
        actor_role=context.role.value,
        tenant_id=context.active_tenant_id,
        module=resolved_module.value,
        resource_type="module_grant",
        resource_id=user_id,
        reason="Module grant updated successfully",
        metadata=flags,
    )
    return success_response(request=request, data=_grant_response(grant).model_dump())


@router.delete(
    "/{project_id}/members/{user_id}/modules/{module}",
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def delete_module_grant(
    user_id: str,
    module: str,
    request: Request,
    context: SecurityContext = Depends(require_project_path_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    # Removing the grant restores the role default.
    resolved_module = _parse_module(module)
    try:
        deleted = await memberships_repo.delete_grant(
            db, user_id=user_id, project_id=context.active_tenant_id, module=resolved_module.value
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    if not deleted:
        raise ResourceNotFound("Module grant not found")
    await _commit(db)
    await audit.log_event(
        event_type="module_grant.deleted",
        outcome=OUTCOME_ALLOW,
        principal_id=context.principal_id,
        actor_role=context.role.value,
        tenant_id=context.active_tenant_id,
        module=resolved_module.value,
        resource_type="module_grant",
        resource_id=user_id,
        reason="Module grant deleted successfully",
    )
    data = {"project_id": context.active_tenant_id, "user_id": user_id, "module": resolved_module.value}
    return success_response(request=request, data=data)
