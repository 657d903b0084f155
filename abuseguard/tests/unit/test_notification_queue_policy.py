from __future__ import annotations

from datetime import datetime, timezone

import pytest

from abuseguard.core.config import get_settings
from abuseguard.services.notifications.queue import (
    dedupe_window_start,
    is_permanent_error,
    retry_backoff_ms,
)
from abuseguard.services.notifications.templates import render_notification


def test_backoff_grows_and_is_capped(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_BACKOFF_MS", "1000")
    monkeypatch.setenv("NOTIFY_BACKOFF_MAX_MS", "5000")
    get_settings.cache_clear()

    first = retry_backoff_ms(notification_id="n-1", attempt_no=1)
    second = retry_backoff_ms(notification_id="n-1", attempt_no=2)
    late = retry_backoff_ms(notification_id="n-1", attempt_no=12)

    assert 1000 <= first <= 1250
    assert 2000 <= second <= 2250
    assert late == 5000
    # Jitter is deterministic per notification and attempt.
    assert first == retry_backoff_ms(notification_id="n-1", attempt_no=1)


@pytest.mark.parametrize(
    ("error", "permanent"),
    [
        ("SMS not implemented", True),
        ("Unknown channel: pigeon", True),
        ("email provider rejected message (503)", False),
        ("No recipients found", False),
        (None, False),
    ],
)
def test_permanent_error_classification(error: str | None, permanent: bool) -> None:
    assert is_permanent_error(error) is permanent


def test_dedupe_window_start_rounds_down() -> None:
    now = datetime(2026, 3, 10, 12, 34, 56, tzinfo=timezone.utc)
    assert dedupe_window_start(now=now, window_seconds=3600) == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert dedupe_window_start(now=now, window_seconds=86400) == datetime(2026, 3, 10, tzinfo=timezone.utc)


def test_suspended_template_lists_resolution_steps() -> None:
    message = render_notification(
        "project_suspended",
        project_name="shop",
        data={
            "cap_type": "db_queries_per_day",
            "current_value": 12000.0,
            "limit_exceeded": 10000.0,
            "details": "db_queries_per_day usage 12000 exceeded limit 10000",
        },
        support_contact="help@example.com",
    )
    assert message.subject == "Project suspended: shop"
    assert "database queries per day" in message.body
    assert "To resolve this:" in message.body
    assert "  1. " in message.body
    assert "help@example.com" in message.body


def test_unknown_template_is_rejected() -> None:
    with pytest.raises(ValueError):
        render_notification("digest", project_name="shop", data={}, support_contact="x")
