from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


_CHANGE_ORDER_STATUS = "^(pending|approved|rejected)$"


class ChangeOrderCreateRequest(ResourcePayload):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = Field(default=None, max_length=5000)
    amount: float | None = None
    status: str = Field(default="pending", pattern=_CHANGE_ORDER_STATUS)


class ChangeOrderUpdateRequest(ResourcePayload):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    description: str | None = Field(default=None, max_length=5000)
    amount: float | None = None
    status: str | None = Field(default=None, pattern=_CHANGE_ORDER_STATUS)


router = build_resource_router(
    module=Module.CHANGE_ORDERS,
    prefix="/change-orders",
    tag="change-orders",
    create_model=ChangeOrderCreateRequest,
    update_model=ChangeOrderUpdateRequest,
)
