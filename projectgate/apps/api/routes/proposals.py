from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


_PROPOSAL_STATUS = "^(draft|sent|accepted|rejected)$"


class ProposalCreateRequest(ResourcePayload):
    title: str = Field(min_length=1, max_length=300)
    client_name: str | None = Field(default=None, max_length=200)
    amount: float | None = Field(default=None, ge=0)
    status: str = Field(default="draft", pattern=_PROPOSAL_STATUS)


class ProposalUpdateRequest(ResourcePayload):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    client_name: str | None = Field(default=None, max_length=200)
    amount: float | None = Field(default=None, ge=0)
    status: str | None = Field(default=None, pattern=_PROPOSAL_STATUS)


router = build_resource_router(
    module=Module.PROPOSALS,
    prefix="/proposals",
    tag="proposals",
    create_model=ProposalCreateRequest,
    update_model=ProposalUpdateRequest,
)
