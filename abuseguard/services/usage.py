from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.models import ErrorMetric, UsageMetric
from abuseguard.domain.types import CapType


METRIC_DB_QUERIES = "db_queries"
METRIC_REALTIME_CONNECTIONS = "realtime_connections"
METRIC_STORAGE_UPLOADS = "storage_uploads"
METRIC_FUNCTION_INVOCATIONS = "function_invocations"

USAGE_METRICS = (
    METRIC_DB_QUERIES,
    METRIC_REALTIME_CONNECTIONS,
    METRIC_STORAGE_UPLOADS,
    METRIC_FUNCTION_INVOCATIONS,
)

# Daily caps compare against the UTC-day total; connection caps against the latest gauge reading.
CAP_METRICS: dict[str, tuple[str, str]] = {
    CapType.DB_QUERIES_PER_DAY.value: (METRIC_DB_QUERIES, "daily_sum"),
    CapType.REALTIME_CONNECTIONS.value: (METRIC_REALTIME_CONNECTIONS, "latest"),
    CapType.STORAGE_UPLOADS_PER_DAY.value: (METRIC_STORAGE_UPLOADS, "daily_sum"),
    CapType.FUNCTION_INVOCATIONS_PER_DAY.value: (METRIC_FUNCTION_INVOCATIONS, "daily_sum"),
}


@dataclass(frozen=True)
class ErrorStats:
    total_requests: int
    error_count: int

    @property
    def error_rate_pct(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return (self.error_count / self.total_requests) * 100.0


class UsageProvider(Protocol):
    async def window_total(
        self, *, session: AsyncSession, project_id: str, metric_type: str, window_s: int, now: datetime
    ) -> int: ...

    async def baseline_average(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        metric_type: str,
        window_s: int,
        baseline_s: int,
        now: datetime,
    ) -> float: ...

    async def error_stats(
        self, *, session: AsyncSession, project_id: str, window_s: int, now: datetime
    ) -> ErrorStats: ...

    async def cap_usage(
        self, *, session: AsyncSession, project_id: str, cap_type: str, now: datetime
    ) -> int: ...


def _day_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


class UsageRepository:
    """Database-backed usage accounting used by the background abuse checks."""

    async def record_usage(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        metric_type: str,
        value: int,
        recorded_at: datetime | None = None,
        commit: bool = True,
    ) -> None:
        session.add(
            UsageMetric(
                project_id=project_id,
                metric_type=metric_type,
                value=int(value),
                recorded_at=recorded_at or datetime.now(timezone.utc),
            )
        )
        if commit:
            await session.commit()

    async def record_request_outcomes(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        request_count: int,
        error_count: int,
        recorded_at: datetime | None = None,
        commit: bool = True,
    ) -> None:
        session.add(
            ErrorMetric(
                project_id=project_id,
                request_count=int(request_count),
                error_count=int(error_count),
                recorded_at=recorded_at or datetime.now(timezone.utc),
            )
        )
        if commit:
            await session.commit()

    async def _sum_between(
        self,
        session: AsyncSession,
        project_id: str,
        metric_type: str,
        start: datetime,
        end: datetime,
    ) -> int:
        total = await session.scalar(
            select(func.coalesce(func.sum(UsageMetric.value), 0)).where(
                UsageMetric.project_id == project_id,
                UsageMetric.metric_type == metric_type,
                UsageMetric.recorded_at >= start,
                UsageMetric.recorded_at < end,
            )
        )
        return int(total or 0)

    async def window_total(
        self, *, session: AsyncSession, project_id: str, metric_type: str, window_s: int, now: datetime
    ) -> int:
        # Include readings stamped exactly at `now`.
        start = now - timedelta(seconds=window_s)
        end = now + timedelta(microseconds=1)
        return await self._sum_between(session, project_id, metric_type, start, end)

    async def baseline_average(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        metric_type: str,
        window_s: int,
        baseline_s: int,
        now: datetime,
    ) -> float:
        # Average per window over the trailing baseline, excluding the current window.
        windows = max(1, (int(baseline_s) - int(window_s)) // max(1, int(window_s)))
        start = now - timedelta(seconds=baseline_s)
        end = now - timedelta(seconds=window_s)
        total = await self._sum_between(session, project_id, metric_type, start, end)
        return total / windows

    async def error_stats(
        self, *, session: AsyncSession, project_id: str, window_s: int, now: datetime
    ) -> ErrorStats:
        start = now - timedelta(seconds=window_s)
        row = (
            await session.execute(
                select(
                    func.coalesce(func.sum(ErrorMetric.request_count), 0),
                    func.coalesce(func.sum(ErrorMetric.error_count), 0),
                ).where(
                    ErrorMetric.project_id == project_id,
                    ErrorMetric.recorded_at >= start,
                    ErrorMetric.recorded_at <= now,
                )
            )
        ).one()
        return ErrorStats(total_requests=int(row[0] or 0), error_count=int(row[1] or 0))

    async def cap_usage(
        self, *, session: AsyncSession, project_id: str, cap_type: str, now: datetime
    ) -> int:
        metric_type, mode = CAP_METRICS[cap_type]
        if mode == "latest":
            value = await session.scalar(
                select(UsageMetric.value)
                .where(
                    UsageMetric.project_id == project_id,
                    UsageMetric.metric_type == metric_type,
                    UsageMetric.recorded_at <= now,
                )
                .order_by(UsageMetric.recorded_at.desc(), UsageMetric.id.desc())
                .limit(1)
            )
            return int(value or 0)
        return await self._sum_between(
            session, project_id, metric_type, _day_start(now), now + timedelta(microseconds=1)
        )
