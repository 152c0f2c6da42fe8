from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.domain.models import User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_subject(session: AsyncSession, external_subject: str) -> User | None:
    result = await session.execute(select(User).where(User.external_subject == external_subject))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    external_subject: str,
    role: str,
    email: str | None = None,
    is_active: bool = True,
) -> User:
    # Explicit provisioning only; login never creates accounts.
    user = User(external_subject=external_subject, email=email, role=role, is_active=is_active)
    session.add(user)
    await session.flush()
    return user


async def update_user(
    session: AsyncSession,
    user: User,
    *,
    role: str | None = None,
    email: str | None = None,
    is_active: bool | None = None,
) -> User:
    if role is not None:
        user.role = role
    if email is not None:
        user.email = email
    if is_active is not None:
        user.is_active = is_active
    await session.flush()
    return user


async def revoke_tokens(session: AsyncSession, user: User, *, at: datetime | None = None) -> User:
    # Every token issued before this instant is rejected from now on.
    user.tokens_valid_after = at or datetime.now(timezone.utc)
    await session.flush()
    return user
