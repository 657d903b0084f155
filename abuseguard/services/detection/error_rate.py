from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.types import DetectionType, Severity
from abuseguard.services.detection.config import (
    DetectionDefaults,
    ErrorRateThresholds,
    resolve_error_rate_config,
)
from abuseguard.services.detection.result import DetectionResult, recommend_action
from abuseguard.services.usage import ErrorStats, UsageProvider


SEVERE_ERROR_RATE_PCT = 75.0
CRITICAL_ERROR_RATE_PCT = 50.0
WARNING_ERROR_RATE_PCT = 30.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_error_rate(*, stats: ErrorStats, config: ErrorRateThresholds) -> DetectionResult:
    # Below the request floor nothing is flagged regardless of the ratio.
    rate = stats.error_rate_pct
    detected = (
        config.enabled
        and stats.total_requests >= config.min_requests
        and stats.total_requests > 0
        and rate >= config.threshold_pct
    )
    severity = Severity.NONE.value
    if detected:
        if rate >= SEVERE_ERROR_RATE_PCT:
            severity = Severity.SEVERE.value
        elif rate >= CRITICAL_ERROR_RATE_PCT:
            severity = Severity.CRITICAL.value
        else:
            # Thresholds configured under the warning band still report a warning.
            severity = Severity.WARNING.value
    return DetectionResult(
        detection_type=DetectionType.ERROR_RATE.value,
        detected=detected,
        severity=severity,
        recommended_action=recommend_action(
            detected=detected, severity=severity, configured_action=config.action
        ),
        current_value=round(rate, 4),
        threshold=float(config.threshold_pct),
        details={
            "total_requests": stats.total_requests,
            "error_count": stats.error_count,
            "min_requests": config.min_requests,
            "window_s": config.window_s,
        },
    )


class ErrorRateDetector:
    def __init__(
        self,
        *,
        defaults: DetectionDefaults,
        usage: UsageProvider,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._defaults = defaults
        self._usage = usage
        self._time_provider = time_provider or _utc_now

    async def evaluate(self, *, session: AsyncSession, project_id: str) -> DetectionResult:
        config = await resolve_error_rate_config(
            session=session, project_id=project_id, defaults=self._defaults
        )
        if not config.enabled:
            return classify_error_rate(stats=ErrorStats(total_requests=0, error_count=0), config=config)
        stats = await self._usage.error_stats(
            session=session,
            project_id=project_id,
            window_s=config.window_s,
            now=self._time_provider(),
        )
        return classify_error_rate(stats=stats, config=config)
