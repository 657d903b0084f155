from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy import func, select

from abuseguard.domain.models import (
    AuditEvent,
    Notification,
    Organization,
    OrganizationMember,
    Project,
    User,
)
from abuseguard.persistence.db import SessionLocal


@dataclass(frozen=True)
class SeededProject:
    project_id: str
    org_id: str
    owner_id: str
    member_ids: list[str] = field(default_factory=list)


async def create_test_project(
    *,
    environment: str = "prod",
    status: str = "active",
    member_count: int = 0,
    name: str | None = None,
) -> SeededProject:
    # Provision an owner, organization, optional members and one project.
    suffix = uuid4().hex[:12]
    owner_id = f"u-owner-{suffix}"
    org_id = f"org-{suffix}"
    project_id = f"p-{suffix}"
    member_ids = [f"u-member-{index}-{suffix}" for index in range(member_count)]

    async with SessionLocal() as session:
        session.add(User(id=owner_id, email=f"owner-{suffix}@example.com", name="Owner"))
        for member_id in member_ids:
            session.add(User(id=member_id, email=f"{member_id}@example.com", name=member_id))
        # Flush users before rows that reference them.
        await session.flush()
        session.add(Organization(id=org_id, name=f"Org {suffix}", owner_id=owner_id))
        await session.flush()
        for member_id in member_ids:
            session.add(OrganizationMember(org_id=org_id, user_id=member_id, role="developer"))
        session.add(
            Project(
                id=project_id,
                org_id=org_id,
                name=name or f"project-{suffix}",
                status=status,
                environment=environment,
            )
        )
        await session.commit()
    return SeededProject(project_id=project_id, org_id=org_id, owner_id=owner_id, member_ids=member_ids)


async def audit_event_types(project_id: str) -> list[str]:
    # Event types recorded for a project in insertion order.
    async with SessionLocal() as session:
        rows = (
            await session.execute(
                select(AuditEvent.event_type)
                .where(AuditEvent.project_id == project_id)
                .order_by(AuditEvent.id.asc())
            )
        ).scalars().all()
    return list(rows)


async def count_notifications(project_id: str, notification_type: str | None = None) -> int:
    async with SessionLocal() as session:
        stmt = select(func.count(Notification.id)).where(Notification.project_id == project_id)
        if notification_type is not None:
            stmt = stmt.where(Notification.notification_type == notification_type)
        return int(await session.scalar(stmt) or 0)
