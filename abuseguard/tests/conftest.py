from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before abuseguard.persistence.db is imported.
_DB_DIR = tempfile.mkdtemp(prefix="abuseguard-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'abuseguard.db')}"
)
os.environ["NOTIFY_FAST_PATH_ENABLED"] = "false"
os.environ.setdefault("EMAIL_PROVIDER", "log")

import pytest

from abuseguard.core.config import get_settings
from abuseguard.domain.models import Base
from abuseguard.persistence.db import engine
from abuseguard.services.notifications.senders import reset_channel_sender
from abuseguard.services.quota import reset_quota_store


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Rebuild every table so tests never observe each other's rows.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_cached_services() -> None:
    # Clear settings and service singletons between tests to avoid env leakage.
    get_settings.cache_clear()
    reset_quota_store()
    reset_channel_sender()
    yield
    get_settings.cache_clear()
    reset_quota_store()
    reset_channel_sender()
