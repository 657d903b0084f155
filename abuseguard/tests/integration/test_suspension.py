from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy import select

from abuseguard.domain.models import Notification, Project, Suspension
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.audit import user_actor
from abuseguard.services.suspension import (
    SuspensionReason,
    get_suspension_history,
    get_suspension_status,
    list_active_suspensions,
    suspend_project,
    unsuspend_project,
)
from abuseguard.tests.utils.projects import audit_event_types, count_notifications, create_test_project


_REASON = SuspensionReason(
    cap_type="db_queries_per_day",
    current_value=12_000.0,
    limit_exceeded=10_000.0,
    details="db_queries_per_day usage 12000 exceeded limit 10000",
)


async def _suspend(project_id: str) -> Suspension | None:
    async with SessionLocal() as session:
        return await suspend_project(session=session, project_id=project_id, reason=_REASON)


async def _unsuspend(project_id: str) -> Suspension | None:
    async with SessionLocal() as session:
        return await unsuspend_project(
            session=session, project_id=project_id, actor=user_actor("ops@example.com"), reason="fixed"
        )


async def _active_records(project_id: str) -> list[Suspension]:
    async with SessionLocal() as session:
        rows = (
            await session.execute(
                select(Suspension).where(Suspension.project_id == project_id, Suspension.unsuspended_at.is_(None))
            )
        ).scalars().all()
    return list(rows)


async def _project_status(project_id: str) -> str:
    async with SessionLocal() as session:
        return (await session.get(Project, project_id)).status


@pytest.mark.asyncio
async def test_repeat_suspension_is_a_noop() -> None:
    seeded = await create_test_project()

    first = await _suspend(seeded.project_id)
    second = await _suspend(seeded.project_id)

    assert first is not None
    assert second is None
    assert len(await _active_records(seeded.project_id)) == 1
    assert await _project_status(seeded.project_id) == "suspended"
    assert await audit_event_types(seeded.project_id) == ["project.suspended"]


@pytest.mark.asyncio
async def test_noop_transitions_leave_caller_work_pending() -> None:
    suspended = await create_test_project()
    active = await create_test_project()
    await _suspend(suspended.project_id)

    async with SessionLocal() as session:
        (await session.get(Project, suspended.project_id)).name = "renamed-suspended"
        assert await suspend_project(session=session, project_id=suspended.project_id, reason=_REASON) is None
        (await session.get(Project, active.project_id)).name = "renamed-active"
        assert (
            await unsuspend_project(
                session=session, project_id=active.project_id, actor=user_actor("ops@example.com")
            )
            is None
        )
        await session.commit()

    async with SessionLocal() as session:
        names = {
            (await session.get(Project, suspended.project_id)).name,
            (await session.get(Project, active.project_id)).name,
        }
    assert names == {"renamed-suspended", "renamed-active"}


@pytest.mark.asyncio
async def test_concurrent_suspensions_create_one_record() -> None:
    seeded = await create_test_project()

    results = await asyncio.gather(*(_suspend(seeded.project_id) for _ in range(2)))

    assert sum(1 for result in results if result is not None) == 1
    assert len(await _active_records(seeded.project_id)) == 1


@pytest.mark.asyncio
async def test_suspension_enqueues_high_priority_notification() -> None:
    seeded = await create_test_project()
    await _suspend(seeded.project_id)

    async with SessionLocal() as session:
        row = (
            await session.execute(select(Notification).where(Notification.project_id == seeded.project_id))
        ).scalar_one()
    assert row.notification_type == "project_suspended"
    assert row.priority == "high"
    assert row.status == "pending"
    assert row.attempts == 0
    assert "To resolve this:" in row.body


@pytest.mark.asyncio
async def test_unsuspend_closes_the_active_record() -> None:
    seeded = await create_test_project()
    await _suspend(seeded.project_id)

    record = await _unsuspend(seeded.project_id)

    assert record is not None
    assert record.unsuspended_by == "ops@example.com"
    assert await _active_records(seeded.project_id) == []
    assert await _project_status(seeded.project_id) == "active"
    assert await count_notifications(seeded.project_id, "project_unsuspended") == 1
    # Unsuspending an active project does nothing.
    assert await _unsuspend(seeded.project_id) is None
    assert await audit_event_types(seeded.project_id) == ["project.suspended", "project.unsuspended"]


@pytest.mark.asyncio
async def test_unsuspend_notification_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_ON_UNSUSPEND", "false")
    seeded = await create_test_project()
    await _suspend(seeded.project_id)
    await _unsuspend(seeded.project_id)
    assert await count_notifications(seeded.project_id, "project_unsuspended") == 0


@pytest.mark.asyncio
async def test_random_transitions_keep_status_and_records_consistent() -> None:
    seeded = await create_test_project()
    rng = random.Random(20260310)
    expected_records = 0
    suspended = False

    for _ in range(25):
        if rng.random() < 0.5:
            result = await _suspend(seeded.project_id)
            if not suspended:
                expected_records += 1
            assert (result is not None) is (not suspended)
            suspended = True
        else:
            result = await _unsuspend(seeded.project_id)
            assert (result is not None) is suspended
            suspended = False

        active = await _active_records(seeded.project_id)
        status = await _project_status(seeded.project_id)
        assert len(active) == (1 if suspended else 0)
        assert status == ("suspended" if suspended else "active")

    async with SessionLocal() as session:
        history = await get_suspension_history(session=session, project_id=seeded.project_id)
        status = await get_suspension_status(session=session, project_id=seeded.project_id)
        active_everywhere = await list_active_suspensions(session=session)
    assert len(history) == expected_records
    assert (status.active_suspension is not None) is suspended
    assert len(active_everywhere) == (1 if suspended else 0)
