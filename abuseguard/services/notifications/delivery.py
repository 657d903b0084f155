from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import UnknownChannelError
from abuseguard.domain.models import Notification
from abuseguard.domain.types import NotificationStatus
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.audit import SYSTEM_ACTOR, record_event
from abuseguard.services.notifications.channels import (
    NO_RECIPIENTS_ERROR,
    ChannelResult,
    DeliveryContext,
    get_channel_processor,
)
from abuseguard.services.notifications.queue import (
    claim_notification,
    fetch_pending_notifications,
    is_permanent_error,
    release_stale_claims,
    retry_failed_notifications,
    update_notification_result,
)
from abuseguard.services.notifications.recipients import get_notification_recipients
from abuseguard.services.notifications.senders import ChannelSender, get_channel_sender


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow worker loops to start before migrations by treating missing-table errors as temporary degraded state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def _dispatch_channel(channel: str, context: DeliveryContext, sender: ChannelSender) -> ChannelResult:
    try:
        processor = get_channel_processor(channel)
    except UnknownChannelError as exc:
        return ChannelResult(channel=channel, success=False, error=str(exc))
    try:
        return await processor.process(context, sender)
    except Exception as exc:  # noqa: BLE001 - a misbehaving transport fails its channel, not the worker.
        logger.exception(
            "notification_channel_crashed notification_id=%s channel=%s", context.notification_id, channel
        )
        return ChannelResult(channel=channel, success=False, error=str(exc) or exc.__class__.__name__)


async def process_notification(
    *,
    session: AsyncSession,
    notification_id: str,
    sender: ChannelSender | None = None,
    max_attempts: int | None = None,
) -> Notification | None:
    """Run one delivery pass for a single notification.

    Returns ``None`` when another worker already holds the row or it is not
    eligible. Channels are dispatched one after another; the pass is
    ``delivered`` only if every channel succeeds, otherwise ``failed`` with the
    last channel error.
    """
    settings = get_settings()
    resolved_max = max(1, int(max_attempts or settings.notify_max_attempts))
    notification = await claim_notification(
        session=session, notification_id=notification_id, max_attempts=resolved_max
    )
    if notification is None:
        return None
    resolved_sender = sender or get_channel_sender()

    results: list[ChannelResult] = []
    try:
        recipients = await get_notification_recipients(
            session=session,
            project_id=notification.project_id,
            notification_type=notification.notification_type,
        )
        if not recipients:
            logger.warning("notification_no_recipients notification_id=%s", notification.id)
            status, error = NotificationStatus.FAILED.value, NO_RECIPIENTS_ERROR
        else:
            context = DeliveryContext(
                notification_id=notification.id,
                project_id=notification.project_id,
                notification_type=notification.notification_type,
                subject=notification.subject,
                body=notification.body,
                recipients=recipients,
                data=dict(notification.data_json or {}),
            )
            for channel in list(notification.channels or []):
                results.append(await _dispatch_channel(channel, context, resolved_sender))
            failures = [result for result in results if not result.success]
            if failures:
                status, error = NotificationStatus.FAILED.value, failures[-1].error
            else:
                status, error = NotificationStatus.DELIVERED.value, None
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("notification_recipient_lookup_failed notification_id=%s", notification.id, exc_info=exc)
        status, error = NotificationStatus.FAILED.value, f"recipient lookup failed: {exc.__class__.__name__}"

    await update_notification_result(
        session=session, notification_id=notification.id, status=status, error_message=error
    )
    row = await session.get(Notification, notification.id, populate_existing=True)
    if row is None:
        return None
    await _record_outcome(session=session, row=row, max_attempts=resolved_max, results=results)
    return row


async def _record_outcome(
    *,
    session: AsyncSession,
    row: Notification,
    max_attempts: int,
    results: list[ChannelResult],
) -> None:
    # Mirror every pass to the audit sink; exhausted rows are flagged for operators.
    metadata: dict[str, Any] = {
        "notification_type": row.notification_type,
        "attempts": row.attempts,
        "channels": {result.channel: result.success for result in results},
    }
    if row.status == NotificationStatus.DELIVERED.value:
        event_type, outcome = "notification.delivered", "success"
        logger.info("notification_delivered notification_id=%s attempts=%s", row.id, row.attempts)
    elif int(row.attempts) >= max_attempts or is_permanent_error(row.error_message):
        event_type, outcome = "notification.exhausted", "failure"
        logger.error(
            "notification_retries_exhausted notification_id=%s attempts=%s error=%s",
            row.id,
            row.attempts,
            row.error_message,
        )
    else:
        event_type, outcome = "notification.failed", "failure"
        logger.warning(
            "notification_delivery_failed notification_id=%s attempts=%s error=%s",
            row.id,
            row.attempts,
            row.error_message,
        )
    await record_event(
        session=session,
        actor=SYSTEM_ACTOR,
        event_type=event_type,
        outcome=outcome,
        project_id=row.project_id,
        resource_type="notification",
        resource_id=row.id,
        after={"status": row.status, "attempts": row.attempts, "error_message": row.error_message},
        metadata=metadata,
        commit=True,
    )


async def run_notification_delivery_cycle(
    *,
    sender: ChannelSender | None = None,
    limit: int | None = None,
    max_attempts: int | None = None,
    concurrency: int | None = None,
) -> dict[str, int]:
    # Drain one bounded batch; different notifications may dispatch concurrently.
    settings = get_settings()
    resolved_limit = max(1, int(limit or settings.notify_batch_size))
    resolved_max = max(1, int(max_attempts or settings.notify_max_attempts))
    resolved_concurrency = max(1, int(concurrency or settings.notify_worker_concurrency))
    try:
        async with SessionLocal() as session:
            released = await release_stale_claims(session=session, timeout_s=settings.notify_claim_timeout_s)
            retried = await retry_failed_notifications(session=session, max_attempts=resolved_max)
            batch = await fetch_pending_notifications(
                session=session, limit=resolved_limit, max_attempts=resolved_max
            )
            notification_ids = [row.id for row in batch]
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"fetched": 0, "processed": 0, "delivered": 0, "failed": 0, "retried": 0, "released": 0}
        raise

    semaphore = asyncio.Semaphore(resolved_concurrency)

    async def _process_one(notification_id: str) -> Notification | None:
        async with semaphore:
            async with SessionLocal() as item_session:
                return await process_notification(
                    session=item_session,
                    notification_id=notification_id,
                    sender=sender,
                    max_attempts=resolved_max,
                )

    rows = await asyncio.gather(*(_process_one(notification_id) for notification_id in notification_ids))
    processed = [row for row in rows if row is not None]
    return {
        "fetched": len(notification_ids),
        "processed": len(processed),
        "delivered": sum(1 for row in processed if row.status == NotificationStatus.DELIVERED.value),
        "failed": sum(1 for row in processed if row.status == NotificationStatus.FAILED.value),
        "retried": len(retried),
        "released": released,
    }


async def run_notification_delivery_loop() -> None:
    # Poll the durable queue continuously so retries proceed even without the Redis fast path.
    interval = max(1, int(get_settings().notify_worker_poll_interval_s))
    while True:
        try:
            await run_notification_delivery_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("notification delivery cycle failed")
        await asyncio.sleep(interval)
