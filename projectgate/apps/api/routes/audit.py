from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.apps.api.deps import get_db, require_project_admin
from projectgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from projectgate.apps.api.response import SuccessEnvelope, success_response
from projectgate.core.errors import ResourceNotFound, StorageFailure
from projectgate.persistence.repos import audit as audit_repo
from projectgate.services.authz.context import SecurityContext


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str | None
    actor_type: str
    principal_id: str | None
    actor_role: str | None
    event_type: str
    module: str | None
    intent: str | None
    outcome: str
    reason: str | None
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    project_id: str
    items: list[AuditEventResponse]
    total: int
    next_offset: int | None


def _to_response(event) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        tenant_id=event.tenant_id,
        actor_type=event.actor_type,
        principal_id=event.principal_id,
        actor_role=event.actor_role,
        event_type=event.event_type,
        module=event.module,
        intent=event.intent,
        outcome=event.outcome,
        reason=event.reason,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        request_id=event.request_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/events", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    outcome: str | None = Query(default=None, pattern="^(allow|deny)$"),
    module: str | None = None,
    principal_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    context: SecurityContext = Depends(require_project_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Project admins only ever see their active project's trail.
    filters: dict[str, Any] = {
        "tenant_id": context.active_tenant_id,
        "event_type": event_type,
        "outcome": outcome,
        "module": module.upper() if module else None,
        "principal_id": principal_id,
        "occurred_from": occurred_from,
        "occurred_to": occurred_to,
    }
    try:
        events = await audit_repo.list_events(db, **filters, offset=offset, limit=limit + 1)
        total = await audit_repo.count_events(db, **filters)
    except SQLAlchemyError as exc:
        raise StorageFailure() from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    page = AuditEventsPage(
        project_id=context.active_tenant_id,
        items=[_to_response(event) for event in events],
        total=total,
        next_offset=next_offset,
    )
    return success_response(request=request, data=page.model_dump())


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse])
async def get_audit_event(
    event_id: int,
    request: Request,
    context: SecurityContext = Depends(require_project_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event_by_id(db, tenant_id=context.active_tenant_id, event_id=event_id)
    except SQLAlchemyError as exc:
        raise StorageFailure() from exc
    if event is None:
        raise ResourceNotFound("Audit event not found")
    return success_response(request=request, data=_to_response(event).model_dump())
