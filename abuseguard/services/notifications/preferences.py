from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.models import NotificationPreference
from abuseguard.domain.types import NotificationChannel, NotificationType


VALID_NOTIFICATION_TYPES = {item.value for item in NotificationType}
VALID_CHANNELS = {item.value for item in NotificationChannel}
DEFAULT_CHANNELS = [NotificationChannel.EMAIL.value]


def _validate(notification_type: str, channels: Iterable[str]) -> list[str]:
    if notification_type not in VALID_NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {notification_type}")
    normalized = [str(channel) for channel in channels]
    invalid = [channel for channel in normalized if channel not in VALID_CHANNELS]
    if invalid:
        raise ValueError(f"unknown notification channels: {', '.join(invalid)}")
    return normalized


async def _get_exact(
    session: AsyncSession,
    *,
    user_id: str,
    notification_type: str,
    project_id: str | None,
) -> NotificationPreference | None:
    project_clause = (
        NotificationPreference.project_id.is_(None)
        if project_id is None
        else NotificationPreference.project_id == project_id
    )
    return (
        await session.execute(
            select(NotificationPreference).where(
                NotificationPreference.user_id == user_id,
                NotificationPreference.notification_type == notification_type,
                project_clause,
            )
        )
    ).scalar_one_or_none()


async def upsert_preference(
    *,
    session: AsyncSession,
    user_id: str,
    notification_type: str,
    enabled: bool,
    channels: Iterable[str] | None = None,
    project_id: str | None = None,
) -> NotificationPreference:
    """Store a user's opt-in and channel choice for one notification type.

    A null ``project_id`` stores the global preference for the type. Only
    ``enabled`` gates delivery; the channels a notification goes out on are
    fixed when it is enqueued, and ``channels`` is kept as the user's declared
    choice for operator tooling.
    """
    normalized_channels = _validate(notification_type, channels if channels is not None else DEFAULT_CHANNELS)
    row = await _get_exact(session, user_id=user_id, notification_type=notification_type, project_id=project_id)
    if row is None:
        row = NotificationPreference(
            id=uuid4().hex,
            user_id=user_id,
            project_id=project_id,
            notification_type=notification_type,
        )
        session.add(row)
    row.enabled = bool(enabled)
    row.channels = normalized_channels
    await session.commit()
    return row


async def get_preferences(
    *,
    session: AsyncSession,
    user_id: str,
    project_id: str | None = None,
) -> list[NotificationPreference]:
    # Global rows plus, when given, rows scoped to the project.
    clause = NotificationPreference.project_id.is_(None)
    if project_id is not None:
        clause = clause | (NotificationPreference.project_id == project_id)
    rows = (
        await session.execute(
            select(NotificationPreference)
            .where(NotificationPreference.user_id == user_id, clause)
            .order_by(NotificationPreference.notification_type.asc())
        )
    ).scalars().all()
    return list(rows)


async def delete_preference(
    *,
    session: AsyncSession,
    user_id: str,
    notification_type: str,
    project_id: str | None = None,
) -> bool:
    row = await _get_exact(session, user_id=user_id, notification_type=notification_type, project_id=project_id)
    if row is None:
        return False
    await session.delete(row)
    await session.commit()
    return True


async def apply_default_preferences(*, session: AsyncSession, user_id: str) -> int:
    # Seed an enabled email preference per type without overwriting existing choices.
    created = 0
    for notification_type in sorted(VALID_NOTIFICATION_TYPES):
        existing = await _get_exact(
            session, user_id=user_id, notification_type=notification_type, project_id=None
        )
        if existing is not None:
            continue
        session.add(
            NotificationPreference(
                id=uuid4().hex,
                user_id=user_id,
                project_id=None,
                notification_type=notification_type,
                enabled=True,
                channels=list(DEFAULT_CHANNELS),
            )
        )
        created += 1
    await session.commit()
    return created


async def effective_preferences(
    *,
    session: AsyncSession,
    user_ids: list[str],
    notification_type: str,
    project_id: str,
) -> dict[str, NotificationPreference]:
    """Resolve the preference that applies to each user for one type and project.

    A project-scoped row takes precedence over the user's global row. Users
    with no row at all are absent from the result and default to enabled.
    """
    if not user_ids:
        return {}
    rows = (
        await session.execute(
            select(NotificationPreference).where(
                NotificationPreference.user_id.in_(user_ids),
                NotificationPreference.notification_type == notification_type,
                NotificationPreference.project_id.is_(None)
                | (NotificationPreference.project_id == project_id),
            )
        )
    ).scalars().all()
    resolved: dict[str, NotificationPreference] = {}
    for row in rows:
        current = resolved.get(row.user_id)
        if current is None or (current.project_id is None and row.project_id is not None):
            resolved[row.user_id] = row
    return resolved


async def should_receive_notification(
    *,
    session: AsyncSession,
    user_id: str,
    notification_type: str,
    project_id: str,
) -> bool:
    resolved = await effective_preferences(
        session=session, user_ids=[user_id], notification_type=notification_type, project_id=project_id
    )
    preference = resolved.get(user_id)
    return True if preference is None else bool(preference.enabled)
