from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


class ScheduleEventCreateRequest(ResourcePayload):
    title: str = Field(min_length=1, max_length=300)
    starts_on: str | None = Field(default=None, max_length=32)
    ends_on: str | None = Field(default=None, max_length=32)
    location: str | None = Field(default=None, max_length=300)


class ScheduleEventUpdateRequest(ResourcePayload):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    starts_on: str | None = Field(default=None, max_length=32)
    ends_on: str | None = Field(default=None, max_length=32)
    location: str | None = Field(default=None, max_length=300)


router = build_resource_router(
    module=Module.SCHEDULE,
    prefix="/schedule",
    tag="schedule",
    create_model=ScheduleEventCreateRequest,
    update_model=ScheduleEventUpdateRequest,
)
