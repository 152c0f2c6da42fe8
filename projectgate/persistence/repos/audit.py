from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.domain.models import AuditEvent


def _filtered(
    stmt,
    *,
    tenant_id: str,
    event_type: str | None,
    outcome: str | None,
    module: str | None,
    principal_id: str | None,
    occurred_from: datetime | None,
    occurred_to: datetime | None,
):
    # Scope all audit queries to a project to prevent cross-project leakage.
    stmt = stmt.where(AuditEvent.tenant_id == tenant_id)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if module:
        stmt = stmt.where(AuditEvent.module == module)
    if principal_id:
        stmt = stmt.where(AuditEvent.principal_id == principal_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)
    return stmt


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    outcome: str | None = None,
    module: str | None = None,
    principal_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    stmt = _filtered(
        select(AuditEvent),
        tenant_id=tenant_id,
        event_type=event_type,
        outcome=outcome,
        module=module,
        principal_id=principal_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    outcome: str | None = None,
    module: str | None = None,
    principal_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
) -> int:
    stmt = _filtered(
        select(func.count()).select_from(AuditEvent),
        tenant_id=tenant_id,
        event_type=event_type,
        outcome=outcome,
        module=module,
        principal_id=principal_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_event_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_id: int,
) -> AuditEvent | None:
    result = await session.execute(
        select(AuditEvent).where(AuditEvent.id == event_id, AuditEvent.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()
