from __future__ import annotations

import pytest

from abuseguard.core.errors import ProjectNotFoundError, QuotaValidationError
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.audit import user_actor
from abuseguard.services.quota import DEFAULT_CAPS, QuotaStore, get_quota_store
from abuseguard.tests.utils.projects import audit_event_types, create_test_project


_ACTOR = user_actor("ops@example.com")


@pytest.mark.asyncio
async def test_missing_rows_fall_back_to_defaults() -> None:
    seeded = await create_test_project()
    store = get_quota_store()
    async with SessionLocal() as session:
        assert await store.get(session=session, project_id=seeded.project_id, cap_type="db_queries_per_day") == 10_000
        assert await store.get_all_caps(session=session, project_id=seeded.project_id) == DEFAULT_CAPS
        stats = await store.quota_stats(session=session, project_id=seeded.project_id)
    assert all(stat.is_default for stat in stats)


@pytest.mark.asyncio
async def test_set_persists_and_audits() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        await store.set(
            session=session,
            project_id=seeded.project_id,
            cap_type="realtime_connections",
            value=250,
            actor=_ACTOR,
        )
    async with SessionLocal() as session:
        assert await store.get(session=session, project_id=seeded.project_id, cap_type="realtime_connections") == 250
        # A second write updates in place instead of adding a row.
        await store.set(
            session=session,
            project_id=seeded.project_id,
            cap_type="realtime_connections",
            value=300,
            actor=_ACTOR,
        )
        rows = await store.list_quotas(session=session, project_id=seeded.project_id)
    assert [(row.cap_type, row.cap_value) for row in rows] == [("realtime_connections", 300)]
    assert await audit_event_types(seeded.project_id) == ["quota.cap.updated", "quota.cap.updated"]


@pytest.mark.asyncio
async def test_invalid_set_leaves_cap_untouched() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        with pytest.raises(QuotaValidationError):
            await store.set(
                session=session,
                project_id=seeded.project_id,
                cap_type="db_queries_per_day",
                value=99,
                actor=_ACTOR,
            )
    async with SessionLocal() as session:
        assert await store.list_quotas(session=session, project_id=seeded.project_id) == []
    assert await audit_event_types(seeded.project_id) == []


@pytest.mark.asyncio
async def test_bulk_update_is_atomic() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        with pytest.raises(QuotaValidationError):
            await store.bulk_update(
                session=session,
                project_id=seeded.project_id,
                updates={"db_queries_per_day": 50_000, "storage_uploads_per_day": 5},
                actor=_ACTOR,
            )
    async with SessionLocal() as session:
        assert await store.get_all_caps(session=session, project_id=seeded.project_id) == DEFAULT_CAPS

        caps = await store.bulk_update(
            session=session,
            project_id=seeded.project_id,
            updates={"db_queries_per_day": 50_000, "storage_uploads_per_day": 2_000},
            actor=_ACTOR,
        )
    assert caps["db_queries_per_day"] == 50_000
    assert caps["storage_uploads_per_day"] == 2_000
    assert caps["realtime_connections"] == DEFAULT_CAPS["realtime_connections"]
    assert await audit_event_types(seeded.project_id) == ["quota.caps.bulk_updated"]


@pytest.mark.asyncio
async def test_apply_defaults_is_idempotent() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        assert await store.apply_defaults(session=session, project_id=seeded.project_id) == len(DEFAULT_CAPS)
    async with SessionLocal() as session:
        assert await store.apply_defaults(session=session, project_id=seeded.project_id) == 0
        rows = await store.list_quotas(session=session, project_id=seeded.project_id)
    assert {row.cap_type: row.cap_value for row in rows} == DEFAULT_CAPS


@pytest.mark.asyncio
async def test_reset_to_defaults_restores_every_cap() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        await store.bulk_update(
            session=session,
            project_id=seeded.project_id,
            updates={"db_queries_per_day": 900_000, "function_invocations_per_day": 60},
            actor=_ACTOR,
        )
        caps = await store.reset_to_defaults(session=session, project_id=seeded.project_id, actor=_ACTOR)
    assert caps == DEFAULT_CAPS


@pytest.mark.asyncio
async def test_usage_equal_to_cap_is_not_exceeded() -> None:
    seeded = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        at_limit = await store.check_quota(
            session=session, project_id=seeded.project_id, cap_type="db_queries_per_day", current_usage=10_000
        )
        over = await store.check_quota(
            session=session, project_id=seeded.project_id, cap_type="db_queries_per_day", current_usage=10_001
        )
    assert (at_limit.exceeded, at_limit.remaining) == (False, 0)
    assert (over.exceeded, over.remaining) == (True, 0)


@pytest.mark.asyncio
async def test_writes_to_unknown_project_fail() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ProjectNotFoundError):
            await QuotaStore().set(
                session=session,
                project_id="p-missing",
                cap_type="db_queries_per_day",
                value=1_000,
                actor=_ACTOR,
            )


@pytest.mark.asyncio
async def test_find_projects_exceeding_uses_each_projects_cap() -> None:
    raised = await create_test_project()
    default = await create_test_project()
    store = QuotaStore()
    async with SessionLocal() as session:
        await store.set(
            session=session,
            project_id=raised.project_id,
            cap_type="storage_uploads_per_day",
            value=5_000,
            actor=_ACTOR,
        )
        exceeded = await store.find_projects_exceeding(
            session=session,
            cap_type="storage_uploads_per_day",
            usage={raised.project_id: 4_000, default.project_id: 4_000},
        )
    assert [(check.project_id, check.limit, check.usage) for check in exceeded] == [
        (default.project_id, 1_000, 4_000)
    ]
