from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.types import DetectionAction, DetectionType, Severity
from abuseguard.services.detection.config import DetectionDefaults, SpikeThresholds, resolve_spike_config
from abuseguard.services.detection.result import DetectionResult, most_severe, recommend_action
from abuseguard.services.usage import USAGE_METRICS, UsageProvider


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_spike(
    *,
    current: float,
    baseline: float,
    config: SpikeThresholds,
    metric_type: str | None = None,
) -> DetectionResult:
    """Classify one usage reading against its trailing baseline.

    A spike needs both ``current >= baseline * multiplier`` and
    ``current >= min_usage``. A zero baseline never produces a spike.
    """
    multiplier = config.threshold_multiplier
    threshold = baseline * multiplier
    detected = (
        config.enabled
        and baseline > 0
        and current >= config.min_usage
        and current >= threshold
    )
    severity = Severity.NONE.value
    if detected:
        # Bands scale with the multiplier: 3x/5x/10x at the default 3x.
        if current >= baseline * (multiplier * 10.0 / 3.0):
            severity = Severity.SEVERE.value
        elif current >= baseline * (multiplier * 5.0 / 3.0):
            severity = Severity.CRITICAL.value
        else:
            severity = Severity.WARNING.value
    return DetectionResult(
        detection_type=DetectionType.SPIKE.value,
        detected=detected,
        severity=severity,
        recommended_action=recommend_action(
            detected=detected, severity=severity, configured_action=config.action
        ),
        current_value=float(current),
        threshold=float(threshold),
        baseline_value=float(baseline),
        metric_type=metric_type,
        details={
            "multiplier": multiplier,
            "ratio": round(current / baseline, 4) if baseline > 0 else None,
            "min_usage": config.min_usage,
            "window_s": config.window_s,
            "baseline_s": config.baseline_s,
        },
    )


class SpikeDetector:
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

    async def evaluate(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        metric_type: str,
        config: SpikeThresholds | None = None,
    ) -> DetectionResult:
        resolved = config or await resolve_spike_config(
            session=session, project_id=project_id, defaults=self._defaults
        )
        if not resolved.enabled:
            return classify_spike(current=0, baseline=0, config=resolved, metric_type=metric_type)
        now = self._time_provider()
        current = await self._usage.window_total(
            session=session,
            project_id=project_id,
            metric_type=metric_type,
            window_s=resolved.window_s,
            now=now,
        )
        baseline = await self._usage.baseline_average(
            session=session,
            project_id=project_id,
            metric_type=metric_type,
            window_s=resolved.window_s,
            baseline_s=resolved.baseline_s,
            now=now,
        )
        return classify_spike(current=current, baseline=baseline, config=resolved, metric_type=metric_type)

    async def evaluate_project(self, *, session: AsyncSession, project_id: str) -> DetectionResult:
        # Check every tracked metric and report the most severe finding.
        config = await resolve_spike_config(session=session, project_id=project_id, defaults=self._defaults)
        results = [
            await self.evaluate(session=session, project_id=project_id, metric_type=metric_type, config=config)
            for metric_type in USAGE_METRICS
        ]
        worst = most_severe(results)
        if worst is not None:
            return worst
        return DetectionResult(
            detection_type=DetectionType.SPIKE.value,
            detected=False,
            severity=Severity.NONE.value,
            recommended_action=DetectionAction.NONE.value,
            current_value=0.0,
            threshold=0.0,
        )
