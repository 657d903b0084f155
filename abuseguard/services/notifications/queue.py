from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Iterable
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.models import Notification
from abuseguard.domain.types import (
    PRIORITY_RANK,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)


logger = logging.getLogger(__name__)

_PENDING = NotificationStatus.PENDING.value
_PROCESSING = NotificationStatus.PROCESSING.value
_DELIVERED = NotificationStatus.DELIVERED.value
_FAILED = NotificationStatus.FAILED.value
_RETRYING = NotificationStatus.RETRYING.value

_VALID_TYPES = {item.value for item in NotificationType}
_VALID_CHANNELS = {item.value for item in NotificationChannel}

# Failures containing these fragments never succeed on retry.
PERMANENT_ERROR_FRAGMENTS = (
    "not implemented",
    "invalid recipient",
    "unsubscribed",
    "blocked",
    "unknown channel",
)

_notification_queue_pool = None
_notification_queue_pool_loop = None
_notification_queue_lock = asyncio.Lock()


def _utc_now() -> datetime:
    # Keep notification scheduling and retry bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


def is_permanent_error(error_message: str | None) -> bool:
    lowered = (error_message or "").lower()
    return any(fragment in lowered for fragment in PERMANENT_ERROR_FRAGMENTS)


def _permanent_error_clause():
    # SQL form of is_permanent_error for filtering failed rows in the database.
    return or_(*(Notification.error_message.ilike(f"%{fragment}%") for fragment in PERMANENT_ERROR_FRAGMENTS))


def retry_backoff_ms(*, notification_id: str, attempt_no: int) -> int:
    # Use exponential backoff with deterministic jitter to keep tests reproducible and avoid stampedes.
    settings = get_settings()
    base = max(1, int(settings.notify_backoff_ms))
    cap = max(base, int(settings.notify_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{notification_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def _normalize_channels(channels: Iterable[Any]) -> list[str]:
    normalized: list[str] = []
    for channel in channels:
        value = channel.value if isinstance(channel, NotificationChannel) else str(channel)
        if value not in _VALID_CHANNELS:
            raise ValueError(f"unknown notification channel: {value}")
        if value not in normalized:
            normalized.append(value)
    if not normalized:
        raise ValueError("at least one notification channel is required")
    return normalized


async def get_notification_queue_pool():
    # Cache ARQ Redis pool per event loop to avoid reconnect churn in engine and worker code paths.
    global _notification_queue_pool, _notification_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _notification_queue_pool is not None and _notification_queue_pool_loop == current_loop:
        return _notification_queue_pool
    if _notification_queue_pool is not None and _notification_queue_pool_loop != current_loop:
        _notification_queue_pool = None
    async with _notification_queue_lock:
        if _notification_queue_pool is None:
            settings = get_settings()
            _notification_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _notification_queue_pool_loop = current_loop
    return _notification_queue_pool


async def publish_notification(*, notification_id: str, defer_ms: int = 0) -> bool:
    # Fast path only; the durable poller picks up anything that never reaches Redis.
    settings = get_settings()
    if not settings.notify_fast_path_enabled:
        return False
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    try:
        redis = await get_notification_queue_pool()
        await redis.enqueue_job(
            "dispatch_notification",
            notification_id,
            _queue_name=settings.notify_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception:  # noqa: BLE001 - keep publish best-effort and rely on the durable poller.
        logger.warning("notification_publish_failed notification_id=%s", notification_id, exc_info=True)
        return False


async def enqueue_notification(
    *,
    session: AsyncSession,
    project_id: str,
    notification_type: str,
    subject: str,
    body: str,
    priority: str = NotificationPriority.MEDIUM.value,
    channels: Iterable[Any] = (NotificationChannel.EMAIL.value,),
    data: dict[str, Any] | None = None,
    dedupe_key: str | None = None,
    commit: bool = True,
) -> str:
    """Persist a notification as ``pending`` with zero attempts and return its id.

    When ``dedupe_key`` matches an existing row, that row's id is returned and
    nothing new is written.
    """
    notification_type = str(getattr(notification_type, "value", notification_type))
    priority = str(getattr(priority, "value", priority))
    if notification_type not in _VALID_TYPES:
        raise ValueError(f"unknown notification type: {notification_type}")
    if priority not in PRIORITY_RANK:
        raise ValueError(f"unknown notification priority: {priority}")
    normalized_channels = _normalize_channels(channels)

    if dedupe_key is not None:
        existing = await _find_by_dedupe_key(session, dedupe_key)
        if existing is not None:
            return existing

    row = Notification(
        id=uuid4().hex,
        project_id=project_id,
        notification_type=notification_type,
        priority=priority,
        priority_rank=PRIORITY_RANK[priority],
        subject=subject,
        body=body,
        data_json=data or {},
        channels=normalized_channels,
        status=_PENDING,
        attempts=0,
        dedupe_key=dedupe_key,
        created_at=_utc_now(),
    )
    session.add(row)
    if not commit:
        await session.flush()
        return row.id
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race on the dedupe key; the winner's row stands.
        await session.rollback()
        existing = await _find_by_dedupe_key(session, dedupe_key) if dedupe_key else None
        if existing is None:
            raise
        return existing
    logger.info(
        "notification_enqueued notification_id=%s project_id=%s type=%s priority=%s",
        row.id,
        project_id,
        notification_type,
        priority,
    )
    await publish_notification(notification_id=row.id)
    return row.id


async def _find_by_dedupe_key(session: AsyncSession, dedupe_key: str) -> str | None:
    value = await session.scalar(select(Notification.id).where(Notification.dedupe_key == dedupe_key))
    return str(value) if value is not None else None


def _eligible_clause(*, max_attempts: int, now: datetime):
    # Pending rows, plus retrying rows under the attempt cap whose backoff has elapsed.
    return or_(
        Notification.status == _PENDING,
        and_(
            Notification.status == _RETRYING,
            Notification.attempts < max_attempts,
            or_(Notification.next_attempt_at.is_(None), Notification.next_attempt_at <= now),
        ),
    )


async def fetch_pending_notifications(
    *,
    session: AsyncSession,
    limit: int = 10,
    max_attempts: int = 3,
    now: datetime | None = None,
) -> list[Notification]:
    # Highest priority first, oldest first within a priority.
    resolved_now = now or _utc_now()
    rows = (
        await session.execute(
            select(Notification)
            .where(_eligible_clause(max_attempts=max_attempts, now=resolved_now))
            .order_by(Notification.priority_rank.desc(), Notification.created_at.asc(), Notification.id.asc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


async def claim_notification(
    *,
    session: AsyncSession,
    notification_id: str,
    max_attempts: int = 3,
    now: datetime | None = None,
) -> Notification | None:
    # Compare-and-swap on status so exactly one worker moves a row into processing.
    resolved_now = now or _utc_now()
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            _eligible_clause(max_attempts=max_attempts, now=resolved_now),
        )
        .values(status=_PROCESSING, claimed_at=resolved_now, updated_at=resolved_now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        return None
    return await session.get(Notification, notification_id, populate_existing=True)


async def update_notification_result(
    *,
    session: AsyncSession,
    notification_id: str,
    status: str,
    error_message: str | None = None,
    now: datetime | None = None,
) -> bool:
    # Record one processing pass: final status, delivery time, error, and one more attempt.
    resolved_now = now or _utc_now()
    values: dict[str, Any] = {
        "status": status,
        "error_message": error_message,
        "attempts": Notification.attempts + 1,
        "claimed_at": None,
        "updated_at": resolved_now,
    }
    if status == _DELIVERED:
        values["delivered_at"] = resolved_now
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status == _PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def retry_failed_notifications(
    *,
    session: AsyncSession,
    max_attempts: int,
    now: datetime | None = None,
) -> list[str]:
    """Flip retryable failures to ``retrying`` and schedule their next attempt.

    Rows at or above ``max_attempts`` are terminal and left alone, as are rows
    whose error is permanent.
    """
    resolved_now = now or _utc_now()
    rows = (
        await session.execute(
            select(Notification)
            .where(Notification.status == _FAILED, Notification.attempts < max_attempts)
            .order_by(Notification.priority_rank.desc(), Notification.created_at.asc())
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    flipped: list[str] = []
    for row in rows:
        if is_permanent_error(row.error_message):
            continue
        delay_ms = retry_backoff_ms(notification_id=row.id, attempt_no=int(row.attempts))
        row.status = _RETRYING
        row.next_attempt_at = resolved_now + timedelta(milliseconds=delay_ms)
        row.updated_at = resolved_now
        flipped.append(row.id)
    await session.commit()
    if flipped:
        logger.info("notifications_scheduled_for_retry count=%s", len(flipped))
    return flipped


async def release_stale_claims(
    *,
    session: AsyncSession,
    timeout_s: int,
    now: datetime | None = None,
) -> int:
    # Return rows held by a crashed worker to the retry pool; attempts are untouched.
    resolved_now = now or _utc_now()
    cutoff = resolved_now - timedelta(seconds=max(1, int(timeout_s)))
    result = await session.execute(
        update(Notification)
        .where(Notification.status == _PROCESSING, Notification.claimed_at < cutoff)
        .values(status=_RETRYING, claimed_at=None, next_attempt_at=resolved_now, updated_at=resolved_now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = int(result.rowcount or 0)
    if released:
        logger.warning("notification_stale_claims_released count=%s", released)
    return released


async def get_queue_statistics(*, session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(
            select(Notification.status, func.count(Notification.id)).group_by(Notification.status)
        )
    ).all()
    stats = {status.value: 0 for status in NotificationStatus}
    for status, count in rows:
        stats[str(status)] = int(count)
    stats["total"] = sum(int(count) for _status, count in rows)
    return stats


async def list_exhausted_notifications(
    *,
    session: AsyncSession,
    max_attempts: int,
    limit: int = 100,
) -> list[Notification]:
    # Terminal failures for operator follow-up; never retried automatically.
    rows = (
        await session.execute(
            select(Notification)
            .where(
                Notification.status == _FAILED,
                or_(Notification.attempts >= max_attempts, _permanent_error_clause()),
            )
            .order_by(Notification.created_at.desc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


async def list_project_notifications(
    *,
    session: AsyncSession,
    project_id: str,
    limit: int = 50,
) -> list[Notification]:
    rows = (
        await session.execute(
            select(Notification)
            .where(Notification.project_id == project_id)
            .order_by(Notification.created_at.desc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()
    return list(rows)


def dedupe_window_start(*, now: datetime, window_seconds: int) -> datetime:
    # Round to a stable bucket boundary so repeated triggers inside one window collapse into one row.
    bucket = max(1, int(window_seconds))
    epoch = int(now.timestamp())
    rounded = epoch - (epoch % bucket)
    return datetime.fromtimestamp(rounded, tz=timezone.utc)
