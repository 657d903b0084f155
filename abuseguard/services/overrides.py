from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import OverrideValidationError
from abuseguard.domain.models import ManualOverride
from abuseguard.domain.types import OverrideAction, ProjectStatus
from abuseguard.services.audit import record_event, user_actor
from abuseguard.services.projects import get_project
from abuseguard.services.quota import QuotaStore, get_quota_store, validate_bulk_updates
from abuseguard.services.suspension import notify_project_unsuspended, unsuspend_project


logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000

_UNSUSPEND_ACTIONS = {OverrideAction.UNSUSPEND.value, OverrideAction.BOTH.value}
_CAP_ACTIONS = {OverrideAction.INCREASE_CAPS.value, OverrideAction.BOTH.value}


@dataclass(frozen=True)
class OverrideRequest:
    project_id: str
    action: str
    reason: str
    performed_by: str
    new_caps: dict[str, Any] | None = None
    notes: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class OverrideResult:
    success: bool
    override_id: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    previous_caps: dict[str, int] | None = None
    new_caps: dict[str, int] | None = None
    error: str | None = None


def normalize_override_action(action: Any) -> str:
    value = str(getattr(action, "value", action) or "").strip().lower()
    if value not in {item.value for item in OverrideAction}:
        raise OverrideValidationError("action must be one of unsuspend, increase_caps, both")
    return value


def validate_override_request(request: OverrideRequest) -> tuple[str, list[tuple[str, int]]]:
    # Reject malformed requests before any state is read or written.
    action = normalize_override_action(request.action)
    reason = (request.reason or "").strip()
    if not reason:
        raise OverrideValidationError("reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise OverrideValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    if not (request.performed_by or "").strip():
        raise OverrideValidationError("performed_by is required")
    if action in _CAP_ACTIONS:
        if not request.new_caps:
            raise OverrideValidationError(f"new_caps is required for action {action}")
        return action, validate_bulk_updates(request.new_caps.items())
    if request.new_caps:
        raise OverrideValidationError("new_caps is only accepted with increase_caps or both")
    return action, []


async def perform_manual_override(
    *,
    session: AsyncSession,
    request: OverrideRequest,
    quota_store: QuotaStore | None = None,
) -> OverrideResult:
    """Apply an operator override as a single transaction.

    The status flip, cap writes, override record and audit entry commit
    together or not at all. Failures of any kind come back as
    ``OverrideResult(success=False, error=...)`` after a rollback. The
    unsuspension notification is enqueued only after the commit.
    """
    store = quota_store or get_quota_store()
    actor = user_actor(request.performed_by, ip_address=request.ip_address)
    unsuspended = False
    try:
        action, cap_updates = validate_override_request(request)
        project = await get_project(session, request.project_id, for_update=True)
        previous_status = project.status
        previous_caps = await store.get_all_caps(session=session, project_id=project.id)

        if action in _UNSUSPEND_ACTIONS and project.status == ProjectStatus.SUSPENDED.value:
            record = await unsuspend_project(
                session=session,
                project_id=project.id,
                actor=actor,
                reason=request.reason.strip(),
                commit=False,
                notify=False,
            )
            unsuspended = record is not None
        new_caps: dict[str, int] | None = None
        if action in _CAP_ACTIONS:
            new_caps = await store.bulk_update(
                session=session,
                project_id=project.id,
                updates=cap_updates,
                actor=actor,
                commit=False,
            )

        override = ManualOverride(
            id=uuid4().hex,
            project_id=project.id,
            action=action,
            reason=request.reason.strip(),
            notes=request.notes,
            previous_caps=previous_caps,
            new_caps=new_caps,
            previous_status=previous_status,
            new_status=project.status,
            performed_by=request.performed_by,
            ip_address=request.ip_address,
        )
        session.add(override)
        await record_event(
            session=session,
            actor=actor,
            event_type="project.manual_override",
            outcome="success",
            project_id=project.id,
            resource_type="manual_override",
            resource_id=override.id,
            before={"status": previous_status, "caps": previous_caps},
            after={"status": project.status, "caps": new_caps or previous_caps},
            metadata={"action": action, "reason": override.reason, "notes": request.notes},
            commit=False,
        )
        await session.commit()
    except Exception as exc:  # noqa: BLE001 - the override workflow reports every failure as a result.
        await session.rollback()
        logger.warning(
            "manual_override_failed project_id=%s action=%s performed_by=%s error=%s",
            request.project_id,
            request.action,
            request.performed_by,
            exc,
        )
        return OverrideResult(success=False, error=str(exc) or exc.__class__.__name__)

    logger.info(
        "manual_override_applied project_id=%s action=%s previous_status=%s new_status=%s",
        override.project_id,
        override.action,
        override.previous_status,
        override.new_status,
    )
    if unsuspended and get_settings().notify_on_unsuspend:
        await notify_project_unsuspended(session=session, project=project, reason=override.reason)
    return OverrideResult(
        success=True,
        override_id=override.id,
        previous_status=override.previous_status,
        new_status=override.new_status,
        previous_caps=previous_caps,
        new_caps=new_caps,
    )


async def list_overrides(*, session: AsyncSession, project_id: str) -> list[ManualOverride]:
    rows = (
        await session.execute(
            select(ManualOverride)
            .where(ManualOverride.project_id == project_id)
            .order_by(ManualOverride.performed_at.desc())
        )
    ).scalars().all()
    return list(rows)
