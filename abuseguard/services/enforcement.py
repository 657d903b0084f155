from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.models import DetectionEvent, Project, Suspension
from abuseguard.domain.types import (
    DetectionAction,
    DetectionType,
    NotificationPriority,
    NotificationType,
    ProjectStatus,
    Severity,
)
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.audit import SYSTEM_ACTOR, record_event
from abuseguard.services.detection.config import DetectionDefaults
from abuseguard.services.detection.error_rate import ErrorRateDetector
from abuseguard.services.detection.result import DetectionResult
from abuseguard.services.detection.spike import SpikeDetector
from abuseguard.services.notifications.queue import dedupe_window_start
from abuseguard.services.notifications.templates import render_notification
from abuseguard.services.projects import get_project, list_active_project_ids
from abuseguard.services.quota import CAP_BOUNDS, QuotaCheck, QuotaStore, get_quota_store
from abuseguard.services.suspension import (
    TRIGGER_AUTOMATIC,
    TRIGGER_DETECTION,
    SuspensionReason,
    enqueue_best_effort,
    auto_suspend_allowed,
    suspend_project,
)
from abuseguard.services.usage import UsageProvider, UsageRepository


logger = logging.getLogger(__name__)

QUOTA_WARNING_CRITICAL_RATIO = 0.9
_DETECTION_DEDUPE_WINDOW_S = 3600
_DAY_S = 86400

ACTION_SUSPENDED = "suspended"
ACTION_ALREADY_SUSPENDED = "already_suspended"
ACTION_WARNED = "warned"
ACTION_NONE = "none"

_DETECTION_NOTIFICATION_TYPES = {
    DetectionType.SPIKE.value: NotificationType.USAGE_SPIKE_DETECTED.value,
    DetectionType.ERROR_RATE.value: NotificationType.ERROR_RATE_DETECTED.value,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CapEvaluation:
    project_id: str
    checks: list[QuotaCheck] = field(default_factory=list)
    suspension: Suspension | None = None
    warnings: list[str] = field(default_factory=list)


class AbuseEnforcer:
    """Connects usage accounting, the quota store and the detectors to the suspension engine."""

    def __init__(
        self,
        *,
        usage: UsageProvider | None = None,
        quota_store: QuotaStore | None = None,
        defaults: DetectionDefaults | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._usage = usage or UsageRepository()
        self._quota_store = quota_store or get_quota_store()
        self._defaults = defaults or DetectionDefaults.from_settings()
        self._time_provider = time_provider or _utc_now
        self.spike_detector = SpikeDetector(
            defaults=self._defaults, usage=self._usage, time_provider=self._time_provider
        )
        self.error_rate_detector = ErrorRateDetector(
            defaults=self._defaults, usage=self._usage, time_provider=self._time_provider
        )

    async def enforce_caps(self, *, session: AsyncSession, project_id: str) -> CapEvaluation:
        # Suspend on the first exceeded cap; otherwise raise soft warnings near the limits.
        now = self._time_provider()
        project = await get_project(session, project_id)
        evaluation = CapEvaluation(project_id=project_id)
        for cap_type in CAP_BOUNDS:
            usage = await self._usage.cap_usage(session=session, project_id=project_id, cap_type=cap_type, now=now)
            evaluation.checks.append(
                await self._quota_store.check_quota(
                    session=session, project_id=project_id, cap_type=cap_type, current_usage=usage
                )
            )
        exceeded = next((check for check in evaluation.checks if check.exceeded), None)
        if exceeded is not None and project.status == ProjectStatus.ACTIVE.value:
            if auto_suspend_allowed(project):
                evaluation.suspension = await suspend_project(
                    session=session,
                    project_id=project_id,
                    reason=SuspensionReason(
                        cap_type=exceeded.cap_type,
                        current_value=float(exceeded.usage),
                        limit_exceeded=float(exceeded.limit),
                        details=f"{exceeded.cap_type} usage {exceeded.usage} exceeded limit {exceeded.limit}",
                    ),
                    trigger=TRIGGER_AUTOMATIC,
                    time_provider=self._time_provider,
                )
                return evaluation
            logger.info(
                "project_suspend_skipped_environment project_id=%s environment=%s cap_type=%s",
                project_id,
                project.environment,
                exceeded.cap_type,
            )
        evaluation.warnings = await self._emit_quota_warnings(
            session=session, project=project, checks=evaluation.checks, now=now
        )
        return evaluation

    async def _emit_quota_warnings(
        self,
        *,
        session: AsyncSession,
        project: Project,
        checks: list[QuotaCheck],
        now: datetime,
    ) -> list[str]:
        warning_ratio = float(get_settings().quota_warning_ratio)
        notification_ids: list[str] = []
        day = dedupe_window_start(now=now, window_seconds=_DAY_S).date().isoformat()
        for check in checks:
            if check.exceeded or check.limit <= 0:
                continue
            ratio = check.usage / check.limit
            if ratio >= QUOTA_WARNING_CRITICAL_RATIO:
                level, priority = QUOTA_WARNING_CRITICAL_RATIO, NotificationPriority.HIGH.value
            elif ratio >= warning_ratio:
                level, priority = warning_ratio, NotificationPriority.MEDIUM.value
            else:
                continue
            level_pct = int(round(level * 100))
            data = {
                "cap_type": check.cap_type,
                "usage": check.usage,
                "limit": check.limit,
                "usage_pct": round(ratio * 100, 2),
                "level_pct": level_pct,
            }
            message = render_notification(
                NotificationType.QUOTA_WARNING.value,
                project_name=project.name,
                data=data,
                support_contact=get_settings().support_contact,
            )
            # One warning per project, cap and level per UTC day.
            notification_id = await enqueue_best_effort(
                session=session,
                project_id=project.id,
                notification_type=NotificationType.QUOTA_WARNING.value,
                priority=priority,
                subject=message.subject,
                body=message.body,
                data=data,
                dedupe_key=f"quota_warning:{project.id}:{check.cap_type}:{level_pct}:{day}",
            )
            if notification_id is not None:
                notification_ids.append(notification_id)
        return notification_ids

    async def evaluate_detectors(self, *, session: AsyncSession, project_id: str) -> list[DetectionResult]:
        return [
            await self.spike_detector.evaluate_project(session=session, project_id=project_id),
            await self.error_rate_detector.evaluate(session=session, project_id=project_id),
        ]

    async def act_on_detection(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        result: DetectionResult,
    ) -> str:
        """Record a detector finding and carry out its recommended action.

        Suspension falls back to a warning where auto-suspension is disabled
        for the project's environment.
        """
        if not result.detected:
            return ACTION_NONE
        now = self._time_provider()
        project = await get_project(session, project_id)
        event = DetectionEvent(
            id=uuid4().hex,
            project_id=project_id,
            detection_type=result.detection_type,
            metric_type=result.metric_type,
            severity=result.severity,
            current_value=result.current_value,
            baseline_value=result.baseline_value,
            threshold=result.threshold,
            recommended_action=result.recommended_action,
            details_json=dict(result.details or {}),
            detected_at=now,
        )
        session.add(event)
        await record_event(
            session=session,
            actor=SYSTEM_ACTOR,
            event_type="detection.recorded",
            outcome="success",
            project_id=project_id,
            resource_type="detection_event",
            resource_id=event.id,
            after={
                "detection_type": result.detection_type,
                "severity": result.severity,
                "recommended_action": result.recommended_action,
                "current_value": result.current_value,
                "threshold": result.threshold,
            },
            commit=False,
        )
        await session.commit()
        logger.info(
            "abuse_detected project_id=%s type=%s severity=%s action=%s",
            project_id,
            result.detection_type,
            result.severity,
            result.recommended_action,
        )

        action = result.recommended_action
        if action == DetectionAction.SUSPENSION.value:
            if auto_suspend_allowed(project):
                record = await suspend_project(
                    session=session,
                    project_id=project_id,
                    reason=SuspensionReason(
                        cap_type=None,
                        current_value=result.current_value,
                        limit_exceeded=result.threshold,
                        details=f"{result.detection_type} detected with {result.severity} severity",
                    ),
                    trigger=TRIGGER_DETECTION,
                    time_provider=self._time_provider,
                )
                return ACTION_SUSPENDED if record is not None else ACTION_ALREADY_SUSPENDED
            action = DetectionAction.WARNING.value
        if action == DetectionAction.WARNING.value:
            await self._warn_on_detection(session=session, project=project, result=result, now=now)
            return ACTION_WARNED
        return ACTION_NONE

    async def _warn_on_detection(
        self,
        *,
        session: AsyncSession,
        project: Project,
        result: DetectionResult,
        now: datetime,
    ) -> str | None:
        notification_type = _DETECTION_NOTIFICATION_TYPES[result.detection_type]
        data = {
            "severity": result.severity,
            "metric_type": result.metric_type,
            "current_value": result.current_value,
            "baseline_value": result.baseline_value,
            "threshold": result.threshold,
        }
        message = render_notification(
            notification_type,
            project_name=project.name,
            data=data,
            support_contact=get_settings().support_contact,
        )
        bucket = dedupe_window_start(now=now, window_seconds=_DETECTION_DEDUPE_WINDOW_S)
        priority = (
            NotificationPriority.MEDIUM.value
            if result.severity == Severity.WARNING.value
            else NotificationPriority.HIGH.value
        )
        return await enqueue_best_effort(
            session=session,
            project_id=project.id,
            notification_type=notification_type,
            priority=priority,
            subject=message.subject,
            body=message.body,
            data=data,
            dedupe_key=f"{notification_type}:{project.id}:{int(bucket.timestamp())}",
        )

    async def run_suspension_check(self) -> dict[str, int]:
        # Walk every active project once; one project's failure does not stop the sweep.
        started = time.monotonic()
        counts = {"checked": 0, "suspended": 0, "warnings": 0, "errors": 0}
        async with SessionLocal() as session:
            project_ids = await list_active_project_ids(session)
        for project_id in project_ids:
            async with SessionLocal() as session:
                try:
                    evaluation = await self.enforce_caps(session=session, project_id=project_id)
                except SQLAlchemyError as exc:
                    await session.rollback()
                    counts["errors"] += 1
                    logger.warning("suspension_check_project_failed project_id=%s", project_id, exc_info=exc)
                    continue
            counts["checked"] += 1
            counts["suspended"] += 1 if evaluation.suspension is not None else 0
            counts["warnings"] += len(evaluation.warnings)
        await self._record_job("suspension_check", counts, started)
        return counts

    async def run_detection_check(self) -> dict[str, int]:
        started = time.monotonic()
        counts = {"checked": 0, "detected": 0, "suspended": 0, "warned": 0, "errors": 0}
        async with SessionLocal() as session:
            project_ids = await list_active_project_ids(session)
        for project_id in project_ids:
            async with SessionLocal() as session:
                try:
                    for result in await self.evaluate_detectors(session=session, project_id=project_id):
                        if not result.detected:
                            continue
                        counts["detected"] += 1
                        action = await self.act_on_detection(
                            session=session, project_id=project_id, result=result
                        )
                        if action == ACTION_SUSPENDED:
                            counts["suspended"] += 1
                        elif action == ACTION_WARNED:
                            counts["warned"] += 1
                except SQLAlchemyError as exc:
                    await session.rollback()
                    counts["errors"] += 1
                    logger.warning("detection_check_project_failed project_id=%s", project_id, exc_info=exc)
                    continue
            counts["checked"] += 1
        await self._record_job("detection_check", counts, started)
        return counts

    async def _record_job(self, job: str, counts: dict[str, int], started: float) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("abuse_job_completed job=%s duration_ms=%s counts=%s", job, duration_ms, counts)
        await record_event(
            actor=SYSTEM_ACTOR,
            event_type="abuse.job.completed",
            outcome="success" if counts.get("errors", 0) == 0 else "partial",
            resource_type="abuse_job",
            resource_id=job,
            metadata={"job": job, "duration_ms": duration_ms, **counts},
        )
