from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


class BudgetItemFields(ResourcePayload):
    discipline: str | None = Field(default=None, max_length=100)
    category: str | None = Field(default=None, max_length=100)
    unit: str | None = Field(default=None, max_length=32)
    quantity: float | None = Field(default=None, ge=0)
    est_unit_cost: float | None = None
    est_total: float | None = None
    committed_total: float | None = None
    paid_to_date: float | None = None
    variance_amount: float | None = None
    variance_percent: float | None = None
    notes: str | None = Field(default=None, max_length=5000)


class BudgetItemCreateRequest(BudgetItemFields):
    item: str = Field(min_length=1, max_length=300)


class BudgetItemUpdateRequest(BudgetItemFields):
    item: str | None = Field(default=None, min_length=1, max_length=300)


router = build_resource_router(
    module=Module.BUDGET,
    prefix="/budget",
    tag="budget",
    create_model=BudgetItemCreateRequest,
    update_model=BudgetItemUpdateRequest,
)
