from __future__ import annotations

import pytest

from abuseguard.core.config import get_settings
from abuseguard.core.errors import DetectionConfigError
from abuseguard.domain.types import DetectionAction, Severity
from abuseguard.services.detection.config import (
    DEFAULT_SPIKE_THRESHOLDS,
    SPIKE_PRESETS,
    DetectionDefaults,
    describe_error_rate_config,
    describe_spike_config,
    get_spike_preset,
    validate_error_rate_config,
    validate_spike_config,
)
from abuseguard.services.detection.spike import classify_spike


def test_partial_override_keeps_base_values() -> None:
    config = validate_spike_config({"threshold_multiplier": 4})
    assert config.threshold_multiplier == 4.0
    assert config.window_s == DEFAULT_SPIKE_THRESHOLDS.window_s
    assert config.baseline_s == DEFAULT_SPIKE_THRESHOLDS.baseline_s


@pytest.mark.parametrize(
    ("raw", "field"),
    [
        ({"threshold_multiplier": 0.5}, "threshold_multiplier"),
        ({"threshold_multiplier": 101}, "threshold_multiplier"),
        ({"threshold_multiplier": "fast"}, "threshold_multiplier"),
        ({"window_s": 30}, "window_s"),
        ({"window_s": 600.5}, "window_s"),
        ({"baseline_s": 1800}, "baseline_s"),
        ({"window_s": 7200, "baseline_s": 7200}, "baseline_s"),
        ({"min_usage": -1}, "min_usage"),
        ({"action": "page_oncall"}, "action"),
        ({"action": "suspension", "threshold_multiplier": 1.5}, "threshold_multiplier"),
    ],
)
def test_invalid_spike_config_names_the_field(raw: dict, field: str) -> None:
    with pytest.raises(DetectionConfigError) as exc_info:
        validate_spike_config(raw)
    assert exc_info.value.field == field


def test_error_rate_threshold_must_be_a_percentage() -> None:
    with pytest.raises(DetectionConfigError) as exc_info:
        validate_error_rate_config({"threshold_pct": 120})
    assert exc_info.value.field == "threshold_pct"
    assert validate_error_rate_config({"threshold_pct": 20}).threshold_pct == 20.0


def test_presets_are_valid_configs() -> None:
    for name, preset in SPIKE_PRESETS.items():
        assert validate_spike_config({}, base=preset) == preset, name
    assert get_spike_preset("aggressive").action == "suspension"
    with pytest.raises(DetectionConfigError):
        get_spike_preset("paranoid")


def test_descriptions_are_human_readable() -> None:
    assert describe_spike_config(DEFAULT_SPIKE_THRESHOLDS) == (
        "Flag usage >= 3x the 1d baseline per 1h window (min 10); action: suspension"
    )
    assert describe_error_rate_config(validate_error_rate_config({})) == (
        "Flag error rate >= 50% over 1h (min 100 requests); action: warning"
    )


def test_defaults_come_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("SPIKE_THRESHOLD_MULTIPLIER", "4.5")
    monkeypatch.setenv("ERROR_RATE_MIN_REQUESTS", "250")
    get_settings.cache_clear()
    defaults = DetectionDefaults.from_settings()
    assert defaults.spike.threshold_multiplier == 4.5
    assert defaults.error_rate.min_requests == 250
    assert defaults.spike.action == "suspension"
    assert defaults.error_rate.action == "warning"


@pytest.mark.parametrize(
    ("current", "severity", "action"),
    [
        (300, Severity.WARNING.value, DetectionAction.WARNING.value),
        (500, Severity.CRITICAL.value, DetectionAction.SUSPENSION.value),
        (1000, Severity.SEVERE.value, DetectionAction.SUSPENSION.value),
    ],
)
def test_default_spike_config_suspends_critical_findings(current: int, severity: str, action: str) -> None:
    get_settings.cache_clear()
    result = classify_spike(current=current, baseline=100, config=DetectionDefaults.from_settings().spike)
    assert result.severity == severity
    assert result.recommended_action == action
