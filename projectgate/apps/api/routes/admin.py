from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.apps.api.deps import get_db, get_decision_logger, require_global_admin
from projectgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from projectgate.apps.api.response import SuccessEnvelope, success_response
from projectgate.core.errors import ResourceNotFound, StorageFailure, ValidationFailure
from projectgate.domain.access import Role
from projectgate.domain.models import User
from projectgate.persistence.repos import users as users_repo
from projectgate.services.audit import OUTCOME_ALLOW, DecisionLogger
from projectgate.services.auth.principals import Principal


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class UserCreateRequest(BaseModel):
    external_subject: str = Field(min_length=1, max_length=256)
    email: str | None = Field(default=None, max_length=320)
    role: Role

    model_config = {"extra": "forbid"}


class UserPatchRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    role: Role | None = None
    is_active: bool | None = None

    model_config = {"extra": "forbid"}


class UserResponse(BaseModel):
    id: str
    external_subject: str
    email: str | None
    role: str
    is_active: bool
    tokens_valid_after: str | None


def _to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        external_subject=user.external_subject,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        tokens_valid_after=user.tokens_valid_after.isoformat() if user.tokens_valid_after else None,
    )


async def _load_user(db: AsyncSession, user_id: str) -> User:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise ResourceNotFound("User not found")
    return user


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc


@router.post("/users", status_code=201, response_model=SuccessEnvelope[UserResponse])
async def create_user(
    request: Request,
    payload: UserCreateRequest,
    principal: Principal = Depends(require_global_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    if await users_repo.get_user_by_subject(db, payload.external_subject) is not None:
        raise ValidationFailure("A principal already exists for this subject")
    try:
        user = await users_repo.create_user(
            db,
            external_subject=payload.external_subject,
            email=payload.email,
            role=payload.role.value,
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationFailure("A principal already exists for this subject") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await db.refresh(user)
    await audit.log_event(
        event_type="principal.created",
        outcome=OUTCOME_ALLOW,
        principal_id=principal.id,
        actor_role=principal.role.value,
        resource_type="principal",
        resource_id=user.id,
        reason="Principal created successfully",
        metadata={"role": user.role},
    )
    return success_response(request=request, data=_to_response(user).model_dump())


@router.patch("/users/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def patch_user(
    user_id: str,
    request: Request,
    payload: UserPatchRequest,
    principal: Principal = Depends(require_global_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    user = await _load_user(db, user_id)
    changes = payload.model_dump(exclude_unset=True)
    try:
        await users_repo.update_user(
            db,
            user,
            role=payload.role.value if payload.role is not None else None,
            email=payload.email,
            is_active=payload.is_active,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await _commit(db)
    await db.refresh(user)
    await audit.log_event(
        event_type="principal.updated",
        outcome=OUTCOME_ALLOW,
        principal_id=principal.id,
        actor_role=principal.role.value,
        resource_type="principal",
        resource_id=user.id,
        reason="Principal updated successfully",
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_to_response(user).model_dump())


@router.post("/users/{user_id}/revoke-tokens", response_model=SuccessEnvelope[UserResponse])
async def revoke_user_tokens(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_global_admin),
    db: AsyncSession = Depends(get_db),
    audit: DecisionLogger = Depends(get_decision_logger),
) -> dict:
    # Credentials issued before now stop working on their next request.
    user = await _load_user(db, user_id)
    try:
        await users_repo.revoke_tokens(db, user)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageFailure() from exc
    await _commit(db)
    await db.refresh(user)
    await audit.log_event(
        event_type="principal.tokens_revoked",
        outcome=OUTCOME_ALLOW,
        principal_id=principal.id,
        actor_role=principal.role.value,
        resource_type="principal",
        resource_id=user.id,
        reason="Principal credentials revoked",
    )
    return success_response(request=request, data=_to_response(user).model_dump())
