from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from abuseguard.core.config import get_settings
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.notifications.delivery import (
    process_notification,
    run_notification_delivery_cycle,
)

logger = logging.getLogger(__name__)


async def dispatch_notification(ctx, notification_id: str) -> str:
    # Fast path: process one notification as soon as it is published.
    async with SessionLocal() as session:
        row = await process_notification(session=session, notification_id=notification_id)
    return row.status if row is not None else "skipped"


async def _scheduler_loop() -> None:
    # Poll the durable queue so retries and missed publishes are delivered even when Redis drops jobs.
    interval_s = max(1, int(get_settings().notify_worker_poll_interval_s))
    while True:
        try:
            await run_notification_delivery_cycle()
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("notification scheduler cycle failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # Start the poller with the worker so retries continue without new publishes.
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    # Retries are owned by the notification row, not by arq.
    max_tries = 1
    max_jobs = max(1, int(settings.notify_worker_concurrency))
    functions = [dispatch_notification]
    on_startup = _startup
    on_shutdown = _shutdown
