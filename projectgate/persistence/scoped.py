from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import Any, Mapping

from sqlalchemy import func, inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.core.config import get_settings
from projectgate.core.errors import (
    OwnershipViolation,
    ResourceNotFound,
    StorageFailure,
    ValidationFailure,
)
from projectgate.domain.access import Module
from projectgate.domain.models import (
    Base,
    BudgetItem,
    ChangeOrder,
    Contact,
    ProcurementItem,
    Proposal,
    ScheduleEvent,
    Task,
)
from projectgate.persistence.guards import tenant_predicate
from projectgate.services.audit import OUTCOME_DENY, DecisionLogger
from projectgate.services.authz.context import SecurityContext


logger = logging.getLogger(__name__)

TENANT_FIELD = "project_id"
_SYSTEM_FIELDS = frozenset({"id", TENANT_FIELD, "created_at", "updated_at"})


@dataclass(frozen=True)
class ResourceSpec:
    module: Module
    model: type[Base]
    resource_type: str
    label: str
    filterable: frozenset[str]
    searchable: tuple[str, ...] = ()
    required: frozenset[str] = frozenset()

    @property
    def writable(self) -> frozenset[str]:
        columns = {column.key for column in inspect(self.model).columns}
        return frozenset(columns - _SYSTEM_FIELDS)


RESOURCE_SPECS: dict[Module, ResourceSpec] = {
    Module.TASKS: ResourceSpec(
        module=Module.TASKS,
        model=Task,
        resource_type="task",
        label="Task",
        filterable=frozenset({"status", "assignee", "due_date"}),
        searchable=("title", "description"),
        required=frozenset({"title"}),
    ),
    Module.SCHEDULE: ResourceSpec(
        module=Module.SCHEDULE,
        model=ScheduleEvent,
        resource_type="schedule_event",
        label="Schedule event",
        filterable=frozenset({"starts_on", "ends_on", "location"}),
        searchable=("title", "location"),
        required=frozenset({"title"}),
    ),
    Module.BUDGET: ResourceSpec(
        module=Module.BUDGET,
        model=BudgetItem,
        resource_type="budget_item",
        label="Budget item",
        filterable=frozenset({"discipline", "category"}),
        searchable=("item", "notes"),
        required=frozenset({"item"}),
    ),
    Module.PROCUREMENT: ResourceSpec(
        module=Module.PROCUREMENT,
        model=ProcurementItem,
        resource_type="procurement_item",
        label="Procurement item",
        filterable=frozenset({"status", "vendor"}),
        searchable=("item", "vendor"),
        required=frozenset({"item"}),
    ),
    Module.CONTACTS: ResourceSpec(
        module=Module.CONTACTS,
        model=Contact,
        resource_type="contact",
        label="Contact",
        filterable=frozenset({"company", "trade", "email"}),
        searchable=("name", "company", "email"),
        required=frozenset({"name"}),
    ),
    Module.PROPOSALS: ResourceSpec(
        module=Module.PROPOSALS,
        model=Proposal,
        resource_type="proposal",
        label="Proposal",
        filterable=frozenset({"status", "client_name"}),
        searchable=("title", "client_name"),
        required=frozenset({"title"}),
    ),
    Module.CHANGE_ORDERS: ResourceSpec(
        module=Module.CHANGE_ORDERS,
        model=ChangeOrder,
        resource_type="change_order",
        label="Change order",
        filterable=frozenset({"status"}),
        searchable=("title", "description"),
        required=frozenset({"title"}),
    ),
}


@dataclass(frozen=True)
class QueryFilter:
    where: Mapping[str, Any] = field(default_factory=dict)
    search: str | None = None
    offset: int = 0
    limit: int | None = None
    order_by: str | None = None
    descending: bool = False


def serialize_row(row: Base) -> dict[str, Any]:
    # Column values only; timestamps as ISO strings.
    payload: dict[str, Any] = {}
    for column in inspect(type(row)).columns:
        value = getattr(row, column.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        payload[column.key] = value
    return payload


class ScopedRepository:
    """Data access for one resource kind, confined to the caller's project.

    Reads force ``project_id`` to the active project regardless of what the
    caller asked for, writes stamp it, and single-record operations verify
    ownership before returning or mutating anything. The session is private:
    callers only ever see plain dictionaries.
    """

    def __init__(
        self,
        session: AsyncSession,
        context: SecurityContext,
        spec: ResourceSpec,
        audit: DecisionLogger,
    ) -> None:
        self._session = session
        self._context = context
        self._spec = spec
        self._audit = audit

    @property
    def spec(self) -> ResourceSpec:
        return self._spec

    @property
    def context(self) -> SecurityContext:
        return self._context

    def _column(self, name: str):
        return getattr(self._spec.model, name)

    def _clean_where(self, where: Mapping[str, Any]) -> dict[str, Any]:
        # The tenant clause is never caller-controlled; it is dropped here and re-added below.
        cleaned: dict[str, Any] = {}
        for key, value in where.items():
            if key == TENANT_FIELD:
                continue
            if key != "id" and key not in self._spec.filterable:
                raise ValidationFailure(f"Unsupported filter field: {key}")
            cleaned[key] = value
        return cleaned

    def _scoped_statement(self, stmt, query: QueryFilter):
        model = self._spec.model
        stmt = stmt.where(tenant_predicate(model, self._context.active_tenant_id))
        for key, value in self._clean_where(query.where).items():
            stmt = stmt.where(self._column(key) == value)
        if query.search:
            term = f"%{query.search.strip()}%"
            columns = [self._column(name) for name in self._spec.searchable]
            if columns:
                stmt = stmt.where(or_(*[column.ilike(term) for column in columns]))
        return stmt

    def _page_bounds(self, query: QueryFilter) -> tuple[int, int]:
        settings = get_settings()
        limit = query.limit if query.limit is not None else settings.default_page_size
        if limit < 1:
            raise ValidationFailure("limit must be positive")
        if query.offset < 0:
            raise ValidationFailure("offset must not be negative")
        return query.offset, min(limit, settings.max_page_size)

    def _verify_row(self, row: Base) -> None:
        # Every row leaving the repository must belong to the active project.
        if getattr(row, TENANT_FIELD) != self._context.active_tenant_id:
            logger.error(
                "scoped_repository_leak resource_type=%s principal_id=%s",
                self._spec.resource_type,
                self._context.principal_id,
            )
            raise OwnershipViolation()

    async def find_many(self, query: QueryFilter | None = None) -> list[dict[str, Any]]:
        query = query or QueryFilter()
        offset, limit = self._page_bounds(query)
        stmt = self._scoped_statement(select(self._spec.model), query)
        order_field = query.order_by or "created_at"
        if order_field not in self._spec.filterable | {"created_at", "updated_at", "id"}:
            raise ValidationFailure(f"Unsupported order field: {order_field}")
        order_column = self._column(order_field)
        stmt = stmt.order_by(order_column.desc() if query.descending else order_column, self._spec.model.id)
        stmt = stmt.offset(offset).limit(limit)
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageFailure() from exc
        rows = list(result.scalars().all())
        for row in rows:
            self._verify_row(row)
        return [serialize_row(row) for row in rows]

    async def count(self, query: QueryFilter | None = None) -> int:
        query = query or QueryFilter()
        stmt = self._scoped_statement(select(func.count()).select_from(self._spec.model), query)
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageFailure() from exc
        return int(result.scalar_one())

    async def _load(self, record_id: str) -> Base:
        try:
            row = await self._session.get(self._spec.model, record_id)
        except SQLAlchemyError as exc:
            raise StorageFailure() from exc
        if row is None:
            raise ResourceNotFound(f"{self._spec.label} not found")
        return row

    async def _log_ownership_denial(self, record_id: str, action: str) -> None:
        await self._audit.log_event(
            event_type="ownership.violation",
            outcome=OUTCOME_DENY,
            principal_id=self._context.principal_id,
            actor_role=self._context.role.value,
            tenant_id=self._context.active_tenant_id,
            module=self._spec.module.value,
            intent=action,
            reason=OwnershipViolation.message,
            resource_type=self._spec.resource_type,
            resource_id=record_id,
            error_code=OwnershipViolation.code,
        )

    async def _load_owned(self, record_id: str, action: str) -> Base:
        # Membership in another project never widens single-record access.
        row = await self._load(record_id)
        if getattr(row, TENANT_FIELD) == self._context.active_tenant_id:
            return row
        await self._log_ownership_denial(record_id, action)
        raise OwnershipViolation()

    async def find_unique(self, record_id: str) -> dict[str, Any]:
        row = await self._load_owned(record_id, "read")
        return serialize_row(row)

    def _writable_payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        writable = self._spec.writable
        payload: dict[str, Any] = {}
        for key, value in data.items():
            if key in _SYSTEM_FIELDS:
                continue
            if key not in writable:
                raise ValidationFailure(f"Unsupported field: {key}")
            payload[key] = value
        return payload

    async def _commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise StorageFailure() from exc

    async def _reload(self, row: Base) -> dict[str, Any]:
        # Runs after commit; the write stands even if this read fails.
        try:
            await self._session.refresh(row)
        except SQLAlchemyError as exc:
            raise StorageFailure() from exc
        return serialize_row(row)

    async def _abort(self, action: str, record_id: str | None) -> None:
        # Only reachable before commit returns.
        await self._session.rollback()
        await self._audit.log_event(
            event_type="mutation.aborted",
            outcome=OUTCOME_DENY,
            principal_id=self._context.principal_id,
            actor_role=self._context.role.value,
            tenant_id=self._context.active_tenant_id,
            module=self._spec.module.value,
            intent=action,
            reason=f"{self._spec.label} {action} cancelled before commit",
            resource_type=self._spec.resource_type,
            resource_id=record_id,
        )

    async def _log_mutation(self, action: str, past_tense: str, record_id: str, fields) -> None:
        await self._audit.log_mutation(
            principal_id=self._context.principal_id,
            actor_role=self._context.role.value,
            tenant_id=self._context.active_tenant_id,
            module=self._spec.module.value,
            action=action,
            resource_type=self._spec.resource_type,
            resource_id=record_id,
            reason=f"{self._spec.label} {past_tense} successfully",
            fields=fields,
        )

    async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
        payload = self._writable_payload(data)
        missing = sorted(name for name in self._spec.required if payload.get(name) in (None, ""))
        if missing:
            raise ValidationFailure(f"Missing required field: {missing[0]}")
        row = self._spec.model(**payload)
        # Stamped last so nothing in the payload can override it.
        setattr(row, TENANT_FIELD, self._context.active_tenant_id)
        try:
            self._session.add(row)
            await self._session.flush()
            record_id = row.id
            await self._commit()
        except asyncio.CancelledError:
            await asyncio.shield(self._abort("create", getattr(row, "id", None)))
            raise
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise StorageFailure() from exc
        await self._log_mutation("create", "created", record_id, payload.keys())
        return await self._reload(row)

    async def update(
        self,
        record_id: str,
        data: Mapping[str, Any],
        *,
        action: str = "update",
        past_tense: str = "updated",
    ) -> dict[str, Any]:
        row = await self._load_owned(record_id, action)
        payload = self._writable_payload(data)
        for name in self._spec.required:
            if name in payload and payload[name] in (None, ""):
                raise ValidationFailure(f"Missing required field: {name}")
        try:
            for key, value in payload.items():
                setattr(row, key, value)
            await self._commit()
        except asyncio.CancelledError:
            await asyncio.shield(self._abort(action, record_id))
            raise
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise StorageFailure() from exc
        await self._log_mutation(action, past_tense, record_id, payload.keys())
        return await self._reload(row)

    async def delete(self, record_id: str) -> None:
        row = await self._load_owned(record_id, "delete")
        try:
            await self._session.delete(row)
            await self._commit()
        except asyncio.CancelledError:
            await asyncio.shield(self._abort("delete", record_id))
            raise
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise StorageFailure() from exc
        await self._log_mutation("delete", "deleted", record_id, ())
