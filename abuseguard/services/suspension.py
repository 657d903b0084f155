from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.models import Project, Suspension
from abuseguard.domain.types import (
    NotificationChannel,
    NotificationPriority,
    NotificationType,
    ProjectStatus,
)
from abuseguard.services.audit import SYSTEM_ACTOR, Actor, record_event
from abuseguard.services.notifications.queue import enqueue_notification
from abuseguard.services.notifications.templates import render_notification
from abuseguard.services.projects import get_project


logger = logging.getLogger(__name__)

TRIGGER_AUTOMATIC = "automatic"
TRIGGER_DETECTION = "detection"
TRIGGER_MANUAL = "manual"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SuspensionReason:
    cap_type: str | None = None
    current_value: float | None = None
    limit_exceeded: float | None = None
    details: str = ""


@dataclass(frozen=True)
class SuspensionStatus:
    project_id: str
    status: str
    active_suspension: Suspension | None


def suspension_snapshot(record: Suspension) -> dict[str, Any]:
    return {
        "suspension_id": record.id,
        "cap_type": record.cap_type,
        "current_value": record.current_value,
        "limit_exceeded": record.limit_exceeded,
        "details": record.details,
        "trigger": record.trigger,
    }


def auto_suspend_allowed(project: Project) -> bool:
    # Automatic transitions only run in configured environments; manual ones run anywhere.
    allowed = {
        item.strip().lower()
        for item in get_settings().auto_suspend_environments.split(",")
        if item.strip()
    }
    return (project.environment or "").lower() in allowed


async def get_active_suspension(session: AsyncSession, project_id: str) -> Suspension | None:
    return (
        await session.execute(
            select(Suspension).where(
                Suspension.project_id == project_id,
                Suspension.unsuspended_at.is_(None),
            )
        )
    ).scalar_one_or_none()


async def suspend_project(
    *,
    session: AsyncSession,
    project_id: str,
    reason: SuspensionReason,
    actor: Actor = SYSTEM_ACTOR,
    trigger: str = TRIGGER_AUTOMATIC,
    commit: bool = True,
    notify: bool = True,
    time_provider: Callable[[], datetime] | None = None,
) -> Suspension | None:
    """Move a project from ACTIVE to SUSPENDED.

    Returns the new record, or ``None`` when the project already has an active
    suspension. Re-triggering is a no-op, not an error. The project row is
    locked for the transition and a partial unique index backs the
    single-active-record invariant if two writers still race.
    """
    now = (time_provider or _utc_now)()
    project = await get_project(session, project_id, for_update=True)
    if await get_active_suspension(session, project_id) is not None:
        logger.info("project_suspend_skipped_already_suspended project_id=%s", project_id)
        return None

    previous_status = project.status
    record = Suspension(
        id=uuid4().hex,
        project_id=project_id,
        cap_type=reason.cap_type,
        current_value=reason.current_value,
        limit_exceeded=reason.limit_exceeded,
        details=reason.details,
        trigger=trigger,
        suspended_by=actor.actor_id,
        suspended_at=now,
    )
    session.add(record)
    project.status = ProjectStatus.SUSPENDED.value
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent writer committed the active record first.
        if not commit:
            raise
        await session.rollback()
        logger.info("project_suspend_lost_race project_id=%s", project_id)
        return None
    await record_event(
        session=session,
        actor=actor,
        event_type="project.suspended",
        outcome="success",
        project_id=project_id,
        resource_type="suspension",
        resource_id=record.id,
        before={"status": previous_status},
        after={"status": project.status, **suspension_snapshot(record)},
        metadata={"trigger": trigger, "reason": asdict(reason)},
        commit=False,
    )
    if commit:
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("project_suspend_lost_race project_id=%s", project_id)
            return None
    logger.info(
        "project_suspended project_id=%s cap_type=%s trigger=%s",
        project_id,
        reason.cap_type,
        trigger,
    )
    if commit and notify:
        await notify_project_suspended(session=session, project=project, record=record)
    return record


async def unsuspend_project(
    *,
    session: AsyncSession,
    project_id: str,
    actor: Actor,
    reason: str = "",
    commit: bool = True,
    notify: bool | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> Suspension | None:
    # No active record means there is nothing to resolve; treat as a no-op.
    now = (time_provider or _utc_now)()
    project = await get_project(session, project_id, for_update=True)
    record = await get_active_suspension(session, project_id)
    if record is None:
        logger.info("project_unsuspend_skipped_not_suspended project_id=%s", project_id)
        return None

    previous_status = project.status
    record.unsuspended_at = now
    record.unsuspended_by = actor.actor_id
    project.status = ProjectStatus.ACTIVE.value
    await record_event(
        session=session,
        actor=actor,
        event_type="project.unsuspended",
        outcome="success",
        project_id=project_id,
        resource_type="suspension",
        resource_id=record.id,
        before={"status": previous_status, **suspension_snapshot(record)},
        after={"status": project.status},
        metadata={"reason": reason},
        commit=False,
    )
    if commit:
        await session.commit()
    logger.info("project_unsuspended project_id=%s actor_id=%s", project_id, actor.actor_id)
    should_notify = get_settings().notify_on_unsuspend if notify is None else notify
    if commit and should_notify:
        await notify_project_unsuspended(session=session, project=project, reason=reason)
    return record


async def notify_project_suspended(*, session: AsyncSession, project: Project, record: Suspension) -> str | None:
    # Runs after the suspension commit; a queue failure is logged and never undoes the transition.
    data = suspension_snapshot(record)
    message = render_notification(
        NotificationType.PROJECT_SUSPENDED.value,
        project_name=project.name,
        data=data,
        support_contact=get_settings().support_contact,
    )
    return await enqueue_best_effort(
        session=session,
        project_id=project.id,
        notification_type=NotificationType.PROJECT_SUSPENDED.value,
        priority=NotificationPriority.HIGH.value,
        subject=message.subject,
        body=message.body,
        data=data,
    )


async def notify_project_unsuspended(*, session: AsyncSession, project: Project, reason: str) -> str | None:
    data = {"reason": reason}
    message = render_notification(
        NotificationType.PROJECT_UNSUSPENDED.value,
        project_name=project.name,
        data=data,
        support_contact=get_settings().support_contact,
    )
    return await enqueue_best_effort(
        session=session,
        project_id=project.id,
        notification_type=NotificationType.PROJECT_UNSUSPENDED.value,
        priority=NotificationPriority.MEDIUM.value,
        subject=message.subject,
        body=message.body,
        data=data,
    )


async def enqueue_best_effort(
    *,
    session: AsyncSession,
    project_id: str,
    notification_type: str,
    priority: str,
    subject: str,
    body: str,
    data: dict[str, Any],
    dedupe_key: str | None = None,
) -> str | None:
    try:
        return await enqueue_notification(
            session=session,
            project_id=project_id,
            notification_type=notification_type,
            priority=priority,
            subject=subject,
            body=body,
            channels=[NotificationChannel.EMAIL.value],
            data=data,
            dedupe_key=dedupe_key,
        )
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "notification_enqueue_failed project_id=%s notification_type=%s",
            project_id,
            notification_type,
            exc_info=exc,
        )
        return None


async def get_suspension_status(*, session: AsyncSession, project_id: str) -> SuspensionStatus:
    project = await get_project(session, project_id)
    return SuspensionStatus(
        project_id=project_id,
        status=project.status,
        active_suspension=await get_active_suspension(session, project_id),
    )


async def list_active_suspensions(*, session: AsyncSession) -> list[Suspension]:
    rows = (
        await session.execute(
            select(Suspension)
            .where(Suspension.unsuspended_at.is_(None))
            .order_by(Suspension.suspended_at.desc())
        )
    ).scalars().all()
    return list(rows)


async def get_suspension_history(*, session: AsyncSession, project_id: str) -> list[Suspension]:
    rows = (
        await session.execute(
            select(Suspension)
            .where(Suspension.project_id == project_id)
            .order_by(Suspension.suspended_at.desc())
        )
    ).scalars().all()
    return list(rows)
