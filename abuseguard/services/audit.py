from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.models import AuditEvent
from abuseguard.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class Actor:
    # Resolved caller identity; this engine records who acted but never authenticates.
    actor_type: str
    actor_id: str | None
    ip_address: str | None = None


SYSTEM_ACTOR = Actor(actor_type="system", actor_id="system")


def user_actor(performed_by: str, *, ip_address: str | None = None) -> Actor:
    return Actor(actor_type="user", actor_id=performed_by, ip_address=ip_address)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor: Actor,
    event_type: str,
    outcome: str,
    project_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner so audit outages never block enforcement.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        project_id=project_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        ip_address=actor.ip_address,
        before_json=sanitize_metadata(before) if before is not None else None,
        after_json=sanitize_metadata(after) if after is not None else None,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning(
                    "audit_event_write_failed event_type=%s project_id=%s",
                    event_type,
                    project_id,
                    exc_info=exc,
                )
        return

    # Callers composing a larger transaction pass commit=False and commit themselves.
    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s project_id=%s",
            event_type,
            project_id,
            exc_info=exc,
        )
