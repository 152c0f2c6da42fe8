from typing import Any, Callable

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from projectgate.apps.api.deps import ModuleScope, module_scope
from projectgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from projectgate.apps.api.response import SuccessEnvelope, success_response
from projectgate.core.config import get_settings
from projectgate.domain.access import Intent, Module
from projectgate.persistence.scoped import QueryFilter


# Query parameters with a fixed meaning; everything else is a field filter.
_RESERVED_QUERY_PARAMS = frozenset({"project_id", "limit", "offset", "search", "order_by", "descending"})


class ResourcePayload(BaseModel):
    # project_id is accepted for client convenience but never trusted.
    project_id: str | None = None

    model_config = {"extra": "forbid"}


class ResourceList(BaseModel):
    project_id: str
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


def _field_filters(request: Request) -> dict[str, str]:
    return {key: value for key, value in request.query_params.items() if key not in _RESERVED_QUERY_PARAMS}


def build_resource_router(
    *,
    module: Module,
    prefix: str,
    tag: str,
    create_model: type[ResourcePayload],
    update_model: type[ResourcePayload],
    extend: Callable[[APIRouter], None] | None = None,
) -> APIRouter:
    """Standard list/create/read/update/delete routes for one tenant-scoped module.

    Every handler receives a :class:`ModuleScope` whose permission check has
    already passed for the handler's intent; reads are redacted for the
    caller's project role. Only a just-created record is echoed back
    unredacted; updates are redacted like reads.
    """
    router = APIRouter(prefix=prefix, tags=[tag], responses=DEFAULT_ERROR_RESPONSES)

    @router.get("", response_model=SuccessEnvelope[ResourceList])
    async def list_records(
        request: Request,
        limit: int | None = Query(default=None, ge=1),
        offset: int = Query(default=0, ge=0),
        search: str | None = Query(default=None, max_length=200),
        order_by: str | None = Query(default=None),
        descending: bool = Query(default=False),
        scope: ModuleScope = Depends(module_scope(module, Intent.READ)),
    ) -> dict:
        query = QueryFilter(
            where=_field_filters(request),
            search=search,
            offset=offset,
            limit=limit,
            order_by=order_by,
            descending=descending,
        )
        settings = get_settings()
        rows = await scope.repository.find_many(query)
        total = await scope.repository.count(query)
        payload = ResourceList(
            project_id=scope.context.active_tenant_id,
            items=scope.redact_many(rows),
            total=total,
            limit=min(limit or settings.default_page_size, settings.max_page_size),
            offset=offset,
        )
        return success_response(request=request, data=payload.model_dump())

    @router.post("", status_code=201, response_model=SuccessEnvelope[dict[str, Any]])
    async def create_record(
        request: Request,
        payload: create_model,  # type: ignore[valid-type]
        scope: ModuleScope = Depends(module_scope(module, Intent.WRITE)),
    ) -> dict:
        row = await scope.repository.create(payload.model_dump(exclude_unset=True))
        return success_response(request=request, data=scope.echo(row))

    @router.get("/{record_id}", response_model=SuccessEnvelope[dict[str, Any]])
    async def get_record(
        record_id: str,
        request: Request,
        scope: ModuleScope = Depends(module_scope(module, Intent.READ)),
    ) -> dict:
        row = await scope.repository.find_unique(record_id)
        return success_response(request=request, data=scope.redact(row))

    @router.patch("/{record_id}", response_model=SuccessEnvelope[dict[str, Any]])
    async def update_record(
        record_id: str,
        request: Request,
        payload: update_model,  # type: ignore[valid-type]
        scope: ModuleScope = Depends(module_scope(module, Intent.WRITE)),
    ) -> dict:
        row = await scope.repository.update(record_id, payload.model_dump(exclude_unset=True))
        return success_response(request=request, data=scope.redact(row))

    @router.delete("/{record_id}", response_model=SuccessEnvelope[dict[str, Any]])
    async def delete_record(
        record_id: str,
        request: Request,
        scope: ModuleScope = Depends(module_scope(module, Intent.DELETE)),
    ) -> dict:
        await scope.repository.delete(record_id)
        return success_response(request=request, data={"id": record_id, "deleted": True})

    if extend is not None:
        extend(router)
    return router
