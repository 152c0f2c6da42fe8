from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.core.errors import PrincipalDeactivated, PrincipalNotFound
from projectgate.domain.access import Role, normalize_role
from projectgate.domain.models import User
from projectgate.persistence.repos import users as users_repo


@dataclass(frozen=True)
class Principal:
    # Authenticated local account; read-only snapshot for one request.
    id: str
    external_subject: str
    email: str | None
    role: Role
    is_active: bool


async def resolve_principal(session: AsyncSession, subject: str) -> Principal:
    # Map a verified subject to its local account; never provisions on login.
    user = await users_repo.get_user_by_subject(session, subject)
    if user is None:
        raise PrincipalNotFound()
    if not user.is_active:
        raise PrincipalDeactivated()
    return Principal(
        id=user.id,
        external_subject=user.external_subject,
        email=user.email,
        role=normalize_role(user.role),
        is_active=user.is_active,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def is_token_revoked(session: AsyncSession, subject: str, issued_at: datetime | None) -> bool:
    # Tokens issued before the principal's revocation watermark are rejected.
    result = await session.execute(
        select(User.tokens_valid_after).where(User.external_subject == subject)
    )
    watermark = result.scalar_one_or_none()
    if watermark is None:
        return False
    if issued_at is None:
        return True
    # iat has one-second resolution.
    return int(issued_at.timestamp()) < int(_as_utc(watermark).timestamp())
