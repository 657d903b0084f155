from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from abuseguard.domain.types import DetectionAction, Severity


SEVERITY_RANK: dict[str, int] = {
    Severity.NONE.value: 0,
    Severity.WARNING.value: 1,
    Severity.CRITICAL.value: 2,
    Severity.SEVERE.value: 3,
}


@dataclass(frozen=True)
class DetectionResult:
    # Pure classification; acting on it is the suspension engine's job.
    detection_type: str
    detected: bool
    severity: str
    recommended_action: str
    current_value: float
    threshold: float
    baseline_value: float | None = None
    metric_type: str | None = None
    details: dict[str, Any] | None = None


def recommend_action(*, detected: bool, severity: str, configured_action: str) -> str:
    # Suspension is only recommended for critical or severe findings; lesser ones downgrade to a warning.
    if not detected or configured_action == DetectionAction.NONE.value:
        return DetectionAction.NONE.value
    if configured_action == DetectionAction.SUSPENSION.value:
        if severity in (Severity.CRITICAL.value, Severity.SEVERE.value):
            return DetectionAction.SUSPENSION.value
        return DetectionAction.WARNING.value
    return DetectionAction.WARNING.value


def most_severe(results: list[DetectionResult]) -> DetectionResult | None:
    detected = [result for result in results if result.detected]
    if not detected:
        return None
    return max(detected, key=lambda result: SEVERITY_RANK[result.severity])
