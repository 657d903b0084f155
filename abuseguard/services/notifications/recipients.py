from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.models import Organization, OrganizationMember, Project, User
from abuseguard.services.notifications.preferences import effective_preferences


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationRecipient:
    # Derived per delivery attempt; never persisted.
    user_id: str
    email: str
    name: str | None = None
    role: str | None = None


async def get_notification_recipients(
    *,
    session: AsyncSession,
    project_id: str,
    notification_type: str,
) -> list[NotificationRecipient]:
    """Resolve who should hear about an event on a project.

    Walks project -> organization -> owner and members, then drops users
    whose effective preference for ``notification_type`` is disabled.
    """
    org = (
        await session.execute(
            select(Organization).join(Project, Project.org_id == Organization.id).where(Project.id == project_id)
        )
    ).scalar_one_or_none()
    if org is None:
        return []

    candidates: dict[str, NotificationRecipient] = {}
    owner = await session.get(User, org.owner_id)
    if owner is not None and owner.email:
        candidates[owner.id] = NotificationRecipient(
            user_id=owner.id, email=owner.email, name=owner.name, role="owner"
        )
    members = (
        await session.execute(
            select(User, OrganizationMember.role)
            .join(OrganizationMember, OrganizationMember.user_id == User.id)
            .where(OrganizationMember.org_id == org.id)
            .order_by(User.id.asc())
        )
    ).all()
    for user, role in members:
        if user.id in candidates or not user.email:
            continue
        candidates[user.id] = NotificationRecipient(user_id=user.id, email=user.email, name=user.name, role=role)

    preferences = await effective_preferences(
        session=session,
        user_ids=list(candidates),
        notification_type=notification_type,
        project_id=project_id,
    )
    recipients = [
        recipient
        for user_id, recipient in candidates.items()
        if preferences.get(user_id) is None or preferences[user_id].enabled
    ]
    opted_out = len(candidates) - len(recipients)
    if opted_out:
        logger.info(
            "notification_recipients_opted_out project_id=%s notification_type=%s count=%s",
            project_id,
            notification_type,
            opted_out,
        )
    return recipients
