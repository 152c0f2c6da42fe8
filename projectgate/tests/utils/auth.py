from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import uuid4

import jwt

from projectgate.core.config import get_settings
from projectgate.domain.access import Module, Role
from projectgate.domain.models import ModuleGrant, Project, ProjectMember, User
from projectgate.persistence.db import SessionLocal


@dataclass(frozen=True)
class SeededPrincipal:
    id: str
    subject: str
    role: Role

    def headers(self, **token_overrides: Any) -> dict[str, str]:
        return bearer_headers(mint_token(self.subject, **token_overrides))


def _utc_now() -> datetime:
    # Keep timestamps consistent for test-generated auth records.
    return datetime.now(timezone.utc)


def mint_token(
    subject: str | None,
    *,
    secret: str | None = None,
    issuer: str | None = None,
    audience: str | None = None,
    issued_at: datetime | None = None,
    expires_in: timedelta = timedelta(minutes=5),
    extra: dict[str, Any] | None = None,
    omit: Iterable[str] = (),
) -> str:
    # HS256 token matching the configured issuer/audience unless overridden.
    settings = get_settings()
    issued = issued_at or _utc_now()
    claims: dict[str, Any] = {
        "iss": issuer or settings.identity_issuer,
        "aud": audience or settings.identity_audience,
        "iat": int(issued.timestamp()),
        "exp": int((issued + expires_in).timestamp()),
    }
    if subject is not None:
        claims["sub"] = subject
    claims.update(extra or {})
    for name in omit:
        claims.pop(name, None)
    return jwt.encode(claims, secret or settings.identity_jwt_secret, algorithm="HS256")


def bearer_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def create_principal(
    *,
    role: Role | str = Role.STAFF,
    subject: str | None = None,
    email: str | None = None,
    is_active: bool = True,
) -> SeededPrincipal:
    # Provision a local account the way an operator would; login never does.
    resolved_role = Role(role)
    subject = subject or f"idp|{uuid4().hex}"
    async with SessionLocal() as session:
        user = User(
            external_subject=subject,
            email=email,
            role=resolved_role.value,
            is_active=is_active,
        )
        session.add(user)
        await session.commit()
        user_id = user.id
    return SeededPrincipal(id=user_id, subject=subject, role=resolved_role)


async def create_project(project_id: str | None = None, *, name: str = "Test Project") -> str:
    project_id = project_id or f"p-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(Project(id=project_id, name=name, status="active"))
        await session.commit()
    return project_id


async def add_member(principal: SeededPrincipal, project_id: str, role: Role | str | None = None) -> None:
    # Project role defaults to the principal's global role.
    member_role = Role(role) if role is not None else principal.role
    async with SessionLocal() as session:
        session.add(ProjectMember(project_id=project_id, user_id=principal.id, role=member_role.value))
        await session.commit()


async def grant_module(
    principal: SeededPrincipal,
    project_id: str,
    module: Module,
    *,
    can_view: bool = False,
    can_edit: bool = False,
    can_upload: bool = False,
    can_request: bool = False,
) -> None:
    async with SessionLocal() as session:
        session.add(
            ModuleGrant(
                user_id=principal.id,
                project_id=project_id,
                module=module.value,
                can_view=can_view,
                can_edit=can_edit,
                can_upload=can_upload,
                can_request=can_request,
            )
        )
        await session.commit()


async def create_member(role: Role | str, *project_ids: str, project_role: Role | str | None = None) -> SeededPrincipal:
    principal = await create_principal(role=role)
    for project_id in project_ids:
        await add_member(principal, project_id, project_role)
    return principal
