from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Iterable, Mapping
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.errors import QuotaValidationError
from abuseguard.domain.models import ProjectQuota
from abuseguard.domain.types import CapType
from abuseguard.services.audit import SYSTEM_ACTOR, Actor, record_event
from abuseguard.services.projects import get_project


logger = logging.getLogger(__name__)

MAX_BULK_UPDATES = 10

ERROR_OUT_OF_RANGE = "OUT_OF_RANGE"
ERROR_INVALID_CAP_TYPE = "INVALID_CAP_TYPE"
ERROR_INVALID_VALUE = "INVALID_VALUE"
ERROR_TOO_MANY_UPDATES = "TOO_MANY_UPDATES"
ERROR_EMPTY_UPDATE = "EMPTY_UPDATE"


@dataclass(frozen=True)
class CapBounds:
    default: int
    minimum: int
    maximum: int


CAP_BOUNDS: dict[str, CapBounds] = {
    CapType.DB_QUERIES_PER_DAY.value: CapBounds(default=10_000, minimum=100, maximum=1_000_000),
    CapType.REALTIME_CONNECTIONS.value: CapBounds(default=100, minimum=1, maximum=10_000),
    CapType.STORAGE_UPLOADS_PER_DAY.value: CapBounds(default=1_000, minimum=10, maximum=100_000),
    CapType.FUNCTION_INVOCATIONS_PER_DAY.value: CapBounds(default=5_000, minimum=50, maximum=500_000),
}

DEFAULT_CAPS: dict[str, int] = {cap_type: bounds.default for cap_type, bounds in CAP_BOUNDS.items()}


@dataclass(frozen=True)
class QuotaStat:
    cap_type: str
    cap_value: int
    is_default: bool


@dataclass(frozen=True)
class QuotaCheck:
    # Compare one usage reading against its cap; usage equal to the cap is still allowed.
    cap_type: str
    limit: int
    usage: int
    remaining: int
    exceeded: bool
    project_id: str | None = None


def normalize_cap_type(cap_type: Any) -> str:
    value = cap_type.value if isinstance(cap_type, CapType) else str(cap_type)
    if value not in CAP_BOUNDS:
        raise QuotaValidationError(ERROR_INVALID_CAP_TYPE, f"unknown cap type: {value}")
    return value


def validate_cap_value(cap_type: Any, value: Any) -> int:
    # Reject bools explicitly since they are ints in Python.
    normalized = normalize_cap_type(cap_type)
    if isinstance(value, bool) or not isinstance(value, int):
        raise QuotaValidationError(ERROR_INVALID_VALUE, f"{normalized} must be an integer")
    bounds = CAP_BOUNDS[normalized]
    if value < bounds.minimum or value > bounds.maximum:
        raise QuotaValidationError(
            ERROR_OUT_OF_RANGE,
            f"{normalized} must be between {bounds.minimum} and {bounds.maximum}",
        )
    return value


def validate_bulk_updates(updates: Iterable[tuple[Any, Any]]) -> list[tuple[str, int]]:
    # Validate the whole batch up front so nothing is written when any entry is invalid.
    items = list(updates)
    if not items:
        raise QuotaValidationError(ERROR_EMPTY_UPDATE, "at least one cap update is required")
    if len(items) > MAX_BULK_UPDATES:
        raise QuotaValidationError(
            ERROR_TOO_MANY_UPDATES, f"at most {MAX_BULK_UPDATES} cap updates per request"
        )
    return [(normalize_cap_type(cap_type), validate_cap_value(cap_type, value)) for cap_type, value in items]


class QuotaStore:
    async def get(self, *, session: AsyncSession, project_id: str, cap_type: Any) -> int:
        # Fall back to the default when no override row exists.
        normalized = normalize_cap_type(cap_type)
        row = await _get_quota_row(session, project_id, normalized)
        if row is None:
            return DEFAULT_CAPS[normalized]
        return int(row.cap_value)

    async def get_all_caps(self, *, session: AsyncSession, project_id: str) -> dict[str, int]:
        caps = dict(DEFAULT_CAPS)
        for row in await self.list_quotas(session=session, project_id=project_id):
            caps[row.cap_type] = int(row.cap_value)
        return caps

    async def list_quotas(self, *, session: AsyncSession, project_id: str) -> list[ProjectQuota]:
        rows = (
            await session.execute(
                select(ProjectQuota)
                .where(ProjectQuota.project_id == project_id)
                .order_by(ProjectQuota.cap_type.asc())
            )
        ).scalars().all()
        return list(rows)

    async def set(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        cap_type: Any,
        value: Any,
        actor: Actor,
        commit: bool = True,
    ) -> int:
        # Validate before touching storage; invalid writes are never persisted.
        normalized = normalize_cap_type(cap_type)
        validated = validate_cap_value(normalized, value)
        await get_project(session, project_id, for_update=True)
        previous = await _upsert_cap(session, project_id, normalized, validated)
        await record_event(
            session=session,
            actor=actor,
            event_type="quota.cap.updated",
            outcome="success",
            project_id=project_id,
            resource_type="project_quota",
            resource_id=normalized,
            before={normalized: previous},
            after={normalized: validated},
            commit=False,
        )
        if commit:
            await session.commit()
        logger.info(
            "quota_cap_updated project_id=%s cap_type=%s value=%s actor_id=%s",
            project_id,
            normalized,
            validated,
            actor.actor_id,
        )
        return validated

    async def apply_defaults(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        actor: Actor = SYSTEM_ACTOR,
        commit: bool = True,
    ) -> int:
        # Insert only the missing cap rows so repeated provisioning is a no-op.
        await get_project(session, project_id, for_update=True)
        existing = {row.cap_type for row in await self.list_quotas(session=session, project_id=project_id)}
        missing = [cap_type for cap_type in DEFAULT_CAPS if cap_type not in existing]
        for cap_type in missing:
            session.add(
                ProjectQuota(
                    id=uuid4().hex,
                    project_id=project_id,
                    cap_type=cap_type,
                    cap_value=DEFAULT_CAPS[cap_type],
                )
            )
        if not missing:
            return 0
        await record_event(
            session=session,
            actor=actor,
            event_type="quota.defaults.applied",
            outcome="success",
            project_id=project_id,
            resource_type="project_quota",
            after={cap_type: DEFAULT_CAPS[cap_type] for cap_type in missing},
            commit=False,
        )
        if commit:
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent provisioner inserted the same rows first.
                await session.rollback()
                return 0
        return len(missing)

    async def bulk_update(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        updates: Iterable[tuple[Any, Any]] | Mapping[Any, Any],
        actor: Actor,
        commit: bool = True,
    ) -> dict[str, int]:
        """Apply up to ten cap updates atomically.

        Every entry is validated before anything is written; a single invalid
        entry raises ``QuotaValidationError`` and leaves all caps untouched.
        Returns the full cap map after the update.
        """
        pairs = updates.items() if isinstance(updates, Mapping) else updates
        validated = validate_bulk_updates(pairs)
        await get_project(session, project_id, for_update=True)
        before: dict[str, int] = {}
        after: dict[str, int] = {}
        for cap_type, value in validated:
            previous = await _upsert_cap(session, project_id, cap_type, value)
            before.setdefault(cap_type, previous)
            after[cap_type] = value
        await record_event(
            session=session,
            actor=actor,
            event_type="quota.caps.bulk_updated",
            outcome="success",
            project_id=project_id,
            resource_type="project_quota",
            before=before,
            after=after,
            commit=False,
        )
        if commit:
            await session.commit()
        return await self.get_all_caps(session=session, project_id=project_id)

    async def reset_to_defaults(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        actor: Actor,
        commit: bool = True,
    ) -> dict[str, int]:
        # Supersede every cap with its default in place; rows are never deleted.
        return await self.bulk_update(
            session=session,
            project_id=project_id,
            updates=list(DEFAULT_CAPS.items()),
            actor=actor,
            commit=commit,
        )

    async def quota_stats(self, *, session: AsyncSession, project_id: str) -> list[QuotaStat]:
        caps = await self.get_all_caps(session=session, project_id=project_id)
        return [
            QuotaStat(cap_type=cap_type, cap_value=value, is_default=value == DEFAULT_CAPS[cap_type])
            for cap_type, value in caps.items()
        ]

    async def check_quota(
        self,
        *,
        session: AsyncSession,
        project_id: str,
        cap_type: Any,
        current_usage: int,
    ) -> QuotaCheck:
        normalized = normalize_cap_type(cap_type)
        limit = await self.get(session=session, project_id=project_id, cap_type=normalized)
        usage = max(0, int(current_usage))
        return QuotaCheck(
            cap_type=normalized,
            limit=limit,
            usage=usage,
            remaining=max(0, limit - usage),
            exceeded=usage > limit,
            project_id=project_id,
        )

    async def find_projects_exceeding(
        self,
        *,
        session: AsyncSession,
        cap_type: Any,
        usage: Mapping[str, int],
    ) -> list[QuotaCheck]:
        # Check a batch of usage readings for one cap; only the exceeded checks are returned.
        normalized = normalize_cap_type(cap_type)
        if not usage:
            return []
        rows = (
            await session.execute(
                select(ProjectQuota.project_id, ProjectQuota.cap_value).where(
                    ProjectQuota.cap_type == normalized,
                    ProjectQuota.project_id.in_(list(usage)),
                )
            )
        ).all()
        limits = {project_id: int(cap_value) for project_id, cap_value in rows}
        exceeded: list[QuotaCheck] = []
        for project_id, raw_usage in sorted(usage.items()):
            limit = limits.get(project_id, DEFAULT_CAPS[normalized])
            current = max(0, int(raw_usage))
            if current > limit:
                exceeded.append(
                    QuotaCheck(
                        cap_type=normalized,
                        limit=limit,
                        usage=current,
                        remaining=0,
                        exceeded=True,
                        project_id=project_id,
                    )
                )
        return exceeded


_quota_store: QuotaStore | None = None


def get_quota_store() -> QuotaStore:
    # Cache the quota store for reuse across workflows.
    global _quota_store
    if _quota_store is None:
        _quota_store = QuotaStore()
    return _quota_store


def reset_quota_store() -> None:
    # Reset cached store for deterministic tests.
    global _quota_store
    _quota_store = None


async def _get_quota_row(
    session: AsyncSession,
    project_id: str,
    cap_type: str,
    *,
    for_update: bool = False,
) -> ProjectQuota | None:
    stmt = select(ProjectQuota).where(
        ProjectQuota.project_id == project_id,
        ProjectQuota.cap_type == cap_type,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def _upsert_cap(session: AsyncSession, project_id: str, cap_type: str, value: int) -> int:
    # Lock the existing row and update in place; returns the value it replaced.
    row = await _get_quota_row(session, project_id, cap_type, for_update=True)
    if row is None:
        session.add(
            ProjectQuota(id=uuid4().hex, project_id=project_id, cap_type=cap_type, cap_value=value)
        )
        await session.flush()
        return DEFAULT_CAPS[cap_type]
    previous = int(row.cap_value)
    row.cap_value = value
    await session.flush()
    return previous
