from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from projectgate.domain.models import ModuleGrant, Project, ProjectMember


async def get_project(session: AsyncSession, project_id: str) -> Project | None:
    result = await session.execute(select(Project).where(Project.id == project_id))
    return result.scalar_one_or_none()


async def list_projects_by_ids(session: AsyncSession, project_ids: list[str]) -> list[Project]:
    if not project_ids:
        return []
    result = await session.execute(
        select(Project).where(Project.id.in_(project_ids)).order_by(Project.created_at, Project.id)
    )
    return list(result.scalars().all())


async def list_all_projects(session: AsyncSession) -> list[Project]:
    result = await session.execute(select(Project).order_by(Project.created_at, Project.id))
    return list(result.scalars().all())


async def create_project(session: AsyncSession, *, name: str, project_id: str | None = None) -> Project:
    project = Project(name=name, status="active")
    if project_id:
        project.id = project_id
    session.add(project)
    await session.flush()
    return project


async def archive_project(session: AsyncSession, project: Project) -> Project:
    # Archive instead of deleting so audit history keeps its referent.
    project.status = "archived"
    project.archived_at = datetime.now(timezone.utc)
    await session.flush()
    return project


async def get_membership(session: AsyncSession, *, user_id: str, project_id: str) -> ProjectMember | None:
    result = await session.execute(
        select(ProjectMember).where(
            ProjectMember.user_id == user_id,
            ProjectMember.project_id == project_id,
        )
    )
    return result.scalar_one_or_none()


async def list_memberships(session: AsyncSession, *, user_id: str) -> list[ProjectMember]:
    # Oldest membership first so "first available project" is stable.
    result = await session.execute(
        select(ProjectMember)
        .where(ProjectMember.user_id == user_id)
        .order_by(ProjectMember.created_at, ProjectMember.project_id)
    )
    return list(result.scalars().all())


async def list_project_members(session: AsyncSession, *, project_id: str) -> list[ProjectMember]:
    result = await session.execute(
        select(ProjectMember)
        .where(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.created_at, ProjectMember.user_id)
    )
    return list(result.scalars().all())


async def upsert_membership(
    session: AsyncSession,
    *,
    user_id: str,
    project_id: str,
    role: str,
) -> tuple[ProjectMember, bool]:
    membership = await get_membership(session, user_id=user_id, project_id=project_id)
    if membership is not None:
        membership.role = role
        await session.flush()
        return membership, False
    membership = ProjectMember(user_id=user_id, project_id=project_id, role=role)
    session.add(membership)
    await session.flush()
    return membership, True


async def get_grant(
    session: AsyncSession,
    *,
    user_id: str,
    project_id: str,
    module: str,
) -> ModuleGrant | None:
    result = await session.execute(
        select(ModuleGrant).where(
            ModuleGrant.user_id == user_id,
            ModuleGrant.project_id == project_id,
            ModuleGrant.module == module,
        )
    )
    return result.scalar_one_or_none()


async def list_grants(session: AsyncSession, *, user_id: str, project_id: str) -> list[ModuleGrant]:
    result = await session.execute(
        select(ModuleGrant).where(
            ModuleGrant.user_id == user_id,
            ModuleGrant.project_id == project_id,
        )
    )
    return list(result.scalars().all())


async def upsert_grant(
    session: AsyncSession,
    *,
    user_id: str,
    project_id: str,
    module: str,
    can_view: bool,
    can_edit: bool,
    can_upload: bool,
    can_request: bool,
) -> ModuleGrant:
    grant = await get_grant(session, user_id=user_id, project_id=project_id, module=module)
    if grant is None:
        grant = ModuleGrant(user_id=user_id, project_id=project_id, module=module)
        session.add(grant)
    grant.can_view = can_view
    grant.can_edit = can_edit
    grant.can_upload = can_upload
    grant.can_request = can_request
    await session.flush()
    return grant


async def delete_grant(session: AsyncSession, *, user_id: str, project_id: str, module: str) -> bool:
    grant = await get_grant(session, user_id=user_id, project_id=project_id, module=module)
    if grant is None:
        return False
    await session.delete(grant)
    await session.flush()
    return True
