from __future__ import annotations

import pytest
from sqlalchemy import select

from abuseguard.domain.models import Project, Suspension
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.overrides import OverrideRequest, list_overrides, perform_manual_override
from abuseguard.services.quota import DEFAULT_CAPS, get_quota_store
from abuseguard.services.suspension import SuspensionReason, suspend_project
from abuseguard.tests.utils.projects import audit_event_types, count_notifications, create_test_project


async def _suspended_project() -> str:
    seeded = await create_test_project()
    async with SessionLocal() as session:
        await suspend_project(
            session=session,
            project_id=seeded.project_id,
            reason=SuspensionReason(cap_type="db_queries_per_day", current_value=12_000.0, limit_exceeded=10_000.0),
        )
    return seeded.project_id


async def _override(project_id: str, **kwargs) -> object:
    request = OverrideRequest(
        project_id=project_id,
        reason=kwargs.pop("reason", "customer upgraded plan"),
        performed_by=kwargs.pop("performed_by", "ops@example.com"),
        **kwargs,
    )
    async with SessionLocal() as session:
        return await perform_manual_override(session=session, request=request)


async def _state(project_id: str) -> tuple[str, int, dict[str, int]]:
    async with SessionLocal() as session:
        project = await session.get(Project, project_id)
        active = (
            await session.execute(
                select(Suspension).where(Suspension.project_id == project_id, Suspension.unsuspended_at.is_(None))
            )
        ).scalars().all()
        caps = await get_quota_store().get_all_caps(session=session, project_id=project_id)
    return project.status, len(active), caps


@pytest.mark.asyncio
async def test_both_unsuspends_and_raises_caps() -> None:
    project_id = await _suspended_project()

    result = await _override(project_id, action="BOTH", new_caps={"db_queries_per_day": 50_000})

    assert result.success is True
    assert (result.previous_status, result.new_status) == ("suspended", "active")
    assert result.previous_caps == DEFAULT_CAPS
    assert result.new_caps["db_queries_per_day"] == 50_000
    status, active, caps = await _state(project_id)
    assert (status, active) == ("active", 0)
    assert caps["db_queries_per_day"] == 50_000

    async with SessionLocal() as session:
        overrides = await list_overrides(session=session, project_id=project_id)
    assert len(overrides) == 1
    assert overrides[0].action == "both"
    assert overrides[0].new_caps["db_queries_per_day"] == 50_000
    events = await audit_event_types(project_id)
    assert events[-3:] == ["project.unsuspended", "quota.caps.bulk_updated", "project.manual_override"]
    # The reactivation notice goes out once the transaction is committed.
    assert await count_notifications(project_id, "project_unsuspended") == 1


@pytest.mark.asyncio
async def test_invalid_caps_roll_back_the_whole_override() -> None:
    project_id = await _suspended_project()
    before = await _state(project_id)

    result = await _override(
        project_id,
        action="both",
        new_caps={"db_queries_per_day": 50_000, "realtime_connections": 0},
    )

    assert result.success is False
    assert "realtime_connections" in (result.error or "")
    assert await _state(project_id) == before
    async with SessionLocal() as session:
        assert await list_overrides(session=session, project_id=project_id) == []
    assert await count_notifications(project_id, "project_unsuspended") == 0


@pytest.mark.parametrize(
    ("action", "new_caps", "reason", "error_fragment"),
    [
        ("increase_caps", None, "more traffic", "new_caps is required"),
        ("unsuspend", {"db_queries_per_day": 20_000}, "fixed", "new_caps is only accepted"),
        ("delete", None, "fixed", "action must be one of"),
        ("unsuspend", None, "   ", "reason is required"),
        ("unsuspend", None, "x" * 1001, "at most 1000"),
    ],
)
@pytest.mark.asyncio
async def test_malformed_requests_are_rejected(
    action: str, new_caps: dict | None, reason: str, error_fragment: str
) -> None:
    project_id = await _suspended_project()
    result = await _override(project_id, action=action, new_caps=new_caps, reason=reason)
    assert result.success is False
    assert error_fragment in (result.error or "")
    assert (await _state(project_id))[0] == "suspended"


@pytest.mark.asyncio
async def test_unsuspend_on_active_project_records_override_without_transition() -> None:
    seeded = await create_test_project()

    result = await _override(seeded.project_id, action="unsuspend")

    assert result.success is True
    assert (result.previous_status, result.new_status) == ("active", "active")
    assert result.new_caps is None
    assert await count_notifications(seeded.project_id, "project_unsuspended") == 0
    assert await audit_event_types(seeded.project_id) == ["project.manual_override"]


@pytest.mark.asyncio
async def test_override_on_unknown_project_fails_cleanly() -> None:
    result = await _override("p-missing", action="unsuspend")
    assert result.success is False
    assert "not found" in (result.error or "")
