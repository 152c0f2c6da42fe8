from __future__ import annotations

from pydantic import Field

from projectgate.apps.api.routes.resources import ResourcePayload, build_resource_router
from projectgate.domain.access import Module


# Shape check only.
_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ContactCreateRequest(ResourcePayload):
    name: str = Field(min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=320, pattern=_EMAIL_PATTERN)
    phone: str | None = Field(default=None, max_length=40)
    company: str | None = Field(default=None, max_length=200)
    trade: str | None = Field(default=None, max_length=100)
    rate: float | None = Field(default=None, ge=0)


class ContactUpdateRequest(ResourcePayload):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=320, pattern=_EMAIL_PATTERN)
    phone: str | None = Field(default=None, max_length=40)
    company: str | None = Field(default=None, max_length=200)
    trade: str | None = Field(default=None, max_length=100)
    rate: float | None = Field(default=None, ge=0)


router = build_resource_router(
    module=Module.CONTACTS,
    prefix="/contacts",
    tag="contacts",
    create_model=ContactCreateRequest,
    update_model=ContactUpdateRequest,
)
