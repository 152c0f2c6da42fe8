from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


_TASK_STATUS = "^(open|in_progress|blocked|done)$"


class TaskCreateRequest(ResourcePayload):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = Field(default=None, max_length=5000)
    status: str = Field(default="open", pattern=_TASK_STATUS)
    assignee: str | None = Field(default=None, max_length=200)
    due_date: str | None = Field(default=None, max_length=32)


class TaskUpdateRequest(ResourcePayload):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    description: str | None = Field(default=None, max_length=5000)
    status: str | None = Field(default=None, pattern=_TASK_STATUS)
    assignee: str | None = Field(default=None, max_length=200)
    due_date: str | None = Field(default=None, max_length=32)


router = build_resource_router(
    module=Module.TASKS,
    prefix="/tasks",
    tag="tasks",
    create_model=TaskCreateRequest,
    update_model=TaskUpdateRequest,
)
