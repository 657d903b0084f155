from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.errors import ProjectNotFoundError
from abuseguard.domain.models import Project


async def get_project(
    session: AsyncSession,
    project_id: str,
    *,
    for_update: bool = False,
) -> Project:
    # Row-lock the project when callers mutate per-project state so writers serialize on it.
    stmt = select(Project).where(Project.id == project_id)
    if for_update:
        stmt = stmt.with_for_update()
    project = (await session.execute(stmt)).scalar_one_or_none()
    if project is None:
        raise ProjectNotFoundError(f"project {project_id} not found")
    return project


async def list_active_project_ids(session: AsyncSession) -> list[str]:
    rows = (
        await session.execute(
            select(Project.id).where(Project.status == "active").order_by(Project.id.asc())
        )
    ).scalars().all()
    return [str(row) for row in rows]
