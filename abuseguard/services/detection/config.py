from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import Settings, get_settings
from abuseguard.core.errors import DetectionConfigError
from abuseguard.domain.models import ErrorRateConfig, SpikeDetectionConfig
from abuseguard.domain.types import DetectionAction
from abuseguard.services.audit import Actor, record_event


VALID_ACTIONS = {action.value for action in DetectionAction}

SPIKE_MULTIPLIER_MIN = 1.0
SPIKE_MULTIPLIER_MAX = 100.0
SPIKE_WINDOW_MIN_S = 60
SPIKE_WINDOW_MAX_S = 24 * 3600
SPIKE_BASELINE_MIN_S = 3600
SPIKE_BASELINE_MAX_S = 30 * 24 * 3600
# Auto-suspending on anything below 2x normal usage suspends healthy growth.
SAFE_SUSPEND_MULTIPLIER = 2.0


@dataclass(frozen=True)
class SpikeThresholds:
    threshold_multiplier: float
    window_s: int
    baseline_s: int
    min_usage: int
    action: str
    enabled: bool = True


@dataclass(frozen=True)
class ErrorRateThresholds:
    threshold_pct: float
    window_s: int
    min_requests: int
    action: str
    enabled: bool = True


@dataclass(frozen=True)
class DetectionDefaults:
    # Process-wide fallback table injected into detectors at construction.
    spike: SpikeThresholds
    error_rate: ErrorRateThresholds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DetectionDefaults:
        resolved = settings or get_settings()
        return cls(
            spike=validate_spike_config(
                {
                    "threshold_multiplier": resolved.spike_threshold_multiplier,
                    "window_s": resolved.spike_window_s,
                    "baseline_s": resolved.spike_baseline_s,
                    "min_usage": resolved.spike_min_usage,
                    "action": resolved.spike_action,
                }
            ),
            error_rate=validate_error_rate_config(
                {
                    "threshold_pct": resolved.error_rate_threshold_pct,
                    "window_s": resolved.error_rate_window_s,
                    "min_requests": resolved.error_rate_min_requests,
                    "action": resolved.error_rate_action,
                }
            ),
        )


DEFAULT_SPIKE_THRESHOLDS = SpikeThresholds(
    threshold_multiplier=3.0,
    window_s=3600,
    baseline_s=86400,
    min_usage=10,
    action=DetectionAction.SUSPENSION.value,
)

DEFAULT_ERROR_RATE_THRESHOLDS = ErrorRateThresholds(
    threshold_pct=50.0,
    window_s=3600,
    min_requests=100,
    action=DetectionAction.WARNING.value,
)

SPIKE_PRESETS: dict[str, SpikeThresholds] = {
    "default": DEFAULT_SPIKE_THRESHOLDS,
    "aggressive": SpikeThresholds(
        threshold_multiplier=5.0,
        window_s=1800,
        baseline_s=12 * 3600,
        min_usage=5,
        action=DetectionAction.SUSPENSION.value,
    ),
    "conservative": SpikeThresholds(
        threshold_multiplier=5.0,
        window_s=3600,
        baseline_s=48 * 3600,
        min_usage=20,
        action=DetectionAction.WARNING.value,
    ),
}


def _as_float(value: Any, *, field: str, min_value: float | None = None, max_value: float | None = None) -> float:
    # Coerce numeric fields and enforce configured bounds.
    if isinstance(value, bool):
        raise DetectionConfigError(field, "must be numeric")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise DetectionConfigError(field, "must be numeric") from exc
    if min_value is not None and parsed < min_value:
        raise DetectionConfigError(field, f"must be >= {min_value}")
    if max_value is not None and parsed > max_value:
        raise DetectionConfigError(field, f"must be <= {max_value}")
    return parsed


def _as_int(value: Any, *, field: str, min_value: int | None = None, max_value: int | None = None) -> int:
    # Require real integers; floats are rejected instead of truncated.
    if isinstance(value, bool) or not isinstance(value, int):
        raise DetectionConfigError(field, "must be an integer")
    if min_value is not None and value < min_value:
        raise DetectionConfigError(field, f"must be >= {min_value}")
    if max_value is not None and value > max_value:
        raise DetectionConfigError(field, f"must be <= {max_value}")
    return value


def _as_action(value: Any, *, field: str) -> str:
    action = value.value if isinstance(value, DetectionAction) else str(value)
    if action not in VALID_ACTIONS:
        raise DetectionConfigError(field, f"must be one of {sorted(VALID_ACTIONS)}")
    return action


def validate_spike_config(
    raw: Mapping[str, Any], *, base: SpikeThresholds = DEFAULT_SPIKE_THRESHOLDS
) -> SpikeThresholds:
    # Parse a partial override on top of `base`; missing keys keep the base value.
    merged = {**asdict(base), **{key: value for key, value in raw.items() if value is not None}}
    multiplier = _as_float(
        merged["threshold_multiplier"],
        field="threshold_multiplier",
        min_value=SPIKE_MULTIPLIER_MIN,
        max_value=SPIKE_MULTIPLIER_MAX,
    )
    window_s = _as_int(
        merged["window_s"], field="window_s", min_value=SPIKE_WINDOW_MIN_S, max_value=SPIKE_WINDOW_MAX_S
    )
    baseline_s = _as_int(
        merged["baseline_s"],
        field="baseline_s",
        min_value=SPIKE_BASELINE_MIN_S,
        max_value=SPIKE_BASELINE_MAX_S,
    )
    if baseline_s <= window_s:
        raise DetectionConfigError("baseline_s", "must be greater than window_s")
    min_usage = _as_int(merged["min_usage"], field="min_usage", min_value=0)
    action = _as_action(merged["action"], field="action")
    if action == DetectionAction.SUSPENSION.value and multiplier < SAFE_SUSPEND_MULTIPLIER:
        raise DetectionConfigError(
            "threshold_multiplier",
            f"must be >= {SAFE_SUSPEND_MULTIPLIER} when action is suspension",
        )
    return SpikeThresholds(
        threshold_multiplier=multiplier,
        window_s=window_s,
        baseline_s=baseline_s,
        min_usage=min_usage,
        action=action,
        enabled=bool(merged.get("enabled", True)),
    )


def validate_error_rate_config(
    raw: Mapping[str, Any], *, base: ErrorRateThresholds = DEFAULT_ERROR_RATE_THRESHOLDS
) -> ErrorRateThresholds:
    merged = {**asdict(base), **{key: value for key, value in raw.items() if value is not None}}
    return ErrorRateThresholds(
        threshold_pct=_as_float(merged["threshold_pct"], field="threshold_pct", min_value=0, max_value=100),
        window_s=_as_int(
            merged["window_s"], field="window_s", min_value=SPIKE_WINDOW_MIN_S, max_value=SPIKE_WINDOW_MAX_S
        ),
        min_requests=_as_int(merged["min_requests"], field="min_requests", min_value=0),
        action=_as_action(merged["action"], field="action"),
        enabled=bool(merged.get("enabled", True)),
    )


def get_spike_preset(name: str) -> SpikeThresholds:
    try:
        return SPIKE_PRESETS[name]
    except KeyError as exc:
        raise DetectionConfigError("preset", f"unknown preset {name!r}") from exc


def _format_duration(seconds: int) -> str:
    if seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    return f"{seconds // 60}m"


def describe_spike_config(config: SpikeThresholds) -> str:
    if not config.enabled:
        return "Spike detection disabled"
    return (
        f"Flag usage >= {config.threshold_multiplier:g}x the {_format_duration(config.baseline_s)} "
        f"baseline per {_format_duration(config.window_s)} window "
        f"(min {config.min_usage}); action: {config.action}"
    )


def describe_error_rate_config(config: ErrorRateThresholds) -> str:
    if not config.enabled:
        return "Error-rate detection disabled"
    return (
        f"Flag error rate >= {config.threshold_pct:g}% over {_format_duration(config.window_s)} "
        f"(min {config.min_requests} requests); action: {config.action}"
    )


def _spike_from_row(row: SpikeDetectionConfig) -> SpikeThresholds:
    return SpikeThresholds(
        threshold_multiplier=float(row.threshold_multiplier),
        window_s=int(row.window_s),
        baseline_s=int(row.baseline_s),
        min_usage=int(row.min_usage),
        action=row.action,
        enabled=bool(row.enabled),
    )


def _error_rate_from_row(row: ErrorRateConfig) -> ErrorRateThresholds:
    return ErrorRateThresholds(
        threshold_pct=float(row.threshold_pct),
        window_s=int(row.window_s),
        min_requests=int(row.min_requests),
        action=row.action,
        enabled=bool(row.enabled),
    )


async def resolve_spike_config(
    *, session: AsyncSession, project_id: str, defaults: DetectionDefaults
) -> SpikeThresholds:
    # Per-project override wins; absence means the injected defaults apply.
    row = await session.get(SpikeDetectionConfig, project_id)
    return _spike_from_row(row) if row is not None else defaults.spike


async def resolve_error_rate_config(
    *, session: AsyncSession, project_id: str, defaults: DetectionDefaults
) -> ErrorRateThresholds:
    row = await session.get(ErrorRateConfig, project_id)
    return _error_rate_from_row(row) if row is not None else defaults.error_rate


async def upsert_spike_config(
    *,
    session: AsyncSession,
    project_id: str,
    raw: Mapping[str, Any],
    actor: Actor,
    defaults: DetectionDefaults,
) -> SpikeThresholds:
    current = await resolve_spike_config(session=session, project_id=project_id, defaults=defaults)
    config = validate_spike_config(raw, base=current)
    row = await session.get(SpikeDetectionConfig, project_id)
    if row is None:
        row = SpikeDetectionConfig(project_id=project_id)
        session.add(row)
    row.threshold_multiplier = config.threshold_multiplier
    row.window_s = config.window_s
    row.baseline_s = config.baseline_s
    row.min_usage = config.min_usage
    row.action = config.action
    row.enabled = config.enabled
    await record_event(
        session=session,
        actor=actor,
        event_type="detection.spike_config.updated",
        outcome="success",
        project_id=project_id,
        resource_type="spike_detection_config",
        resource_id=project_id,
        before=asdict(current),
        after=asdict(config),
        commit=False,
    )
    await session.commit()
    return config


async def upsert_error_rate_config(
    *,
    session: AsyncSession,
    project_id: str,
    raw: Mapping[str, Any],
    actor: Actor,
    defaults: DetectionDefaults,
) -> ErrorRateThresholds:
    current = await resolve_error_rate_config(session=session, project_id=project_id, defaults=defaults)
    config = validate_error_rate_config(raw, base=current)
    row = await session.get(ErrorRateConfig, project_id)
    if row is None:
        row = ErrorRateConfig(project_id=project_id)
        session.add(row)
    row.threshold_pct = config.threshold_pct
    row.window_s = config.window_s
    row.min_requests = config.min_requests
    row.action = config.action
    row.enabled = config.enabled
    await record_event(
        session=session,
        actor=actor,
        event_type="detection.error_rate_config.updated",
        outcome="success",
        project_id=project_id,
        resource_type="error_rate_config",
        resource_id=project_id,
        before=asdict(current),
        after=asdict(config),
        commit=False,
    )
    await session.commit()
    return config

