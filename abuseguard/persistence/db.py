from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from abuseguard.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # Concurrent writers wait on the file lock instead of failing with "database is locked".
        options["connect_args"] = {"timeout": max(1, int(settings.db_busy_timeout_s))}
        return options
    # Bounded asyncpg pools so enforcement sweeps and delivery workers cannot starve each other.
    options["pool_size"] = max(1, int(settings.db_pool_size))
    options["max_overflow"] = max(0, int(settings.db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return options


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_options(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
