from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from projectgate.apps.api.deps import ModuleScope, module_scope
from projectgate.apps.api.response import SuccessEnvelope, success_response
from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.core.errors import ValidationFailure
from projectgate.domain.access import Intent, Module


_PROCUREMENT_STATUS = "^(requested|quoted|ordered|delivered|cancelled)$"
# Only undecided items can be approved or rejected.
_DECIDABLE_STATUSES = frozenset({"requested", "quoted"})


class ProcurementFields(ResourcePayload):
    vendor: str | None = Field(default=None, max_length=200)
    quantity: float | None = Field(default=None, ge=0)
    unit_cost: float | None = Field(default=None, ge=0)
    total_cost: float | None = Field(default=None, ge=0)


class ProcurementCreateRequest(ProcurementFields):
    item: str = Field(min_length=1, max_length=300)
    status: str = Field(default="requested", pattern=_PROCUREMENT_STATUS)


class ProcurementUpdateRequest(ProcurementFields):
    item: str | None = Field(default=None, min_length=1, max_length=300)
    status: str | None = Field(default=None, pattern=_PROCUREMENT_STATUS)


class ApprovalRequest(BaseModel):
    action: Literal["approve", "reject"]

    model_config = {"extra": "forbid"}


def _approval_routes(router: APIRouter) -> None:
    @router.post("/{record_id}/approve", response_model=SuccessEnvelope[dict[str, Any]])
    async def approve_record(
        record_id: str,
        request: Request,
        payload: ApprovalRequest,
        scope: ModuleScope = Depends(module_scope(Module.PROCUREMENT, Intent.APPROVE)),
    ) -> dict:
        current = await scope.repository.find_unique(record_id)
        if current.get("status") not in _DECIDABLE_STATUSES:
            raise ValidationFailure("Can only approve or reject items in requested or quoted status")
        if payload.action == "approve":
            changes = {"status": "approved", "approved_by": scope.context.principal_id}
            row = await scope.repository.update(record_id, changes, action="approve", past_tense="approved")
        else:
            changes = {"status": "rejected", "approved_by": None}
            row = await scope.repository.update(record_id, changes, action="reject", past_tense="rejected")
        return success_response(request=request, data=scope.redact(row))


router = build_resource_router(
    module=Module.PROCUREMENT,
    prefix="/procurement",
    tag="procurement",
    create_model=ProcurementCreateRequest,
    update_model=ProcurementUpdateRequest,
    extend=_approval_routes,
)
