from __future__ import annotations

import os
import tempfile
from typing import AsyncIterator, Iterator

# Settings and the engine are built at import time, so the test environment is
# fixed before any projectgate module is imported.
_DB_DIR = tempfile.mkdtemp(prefix="projectgate-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "PROJECTGATE_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/projectgate.db"
)
os.environ["IDENTITY_JWT_SECRET"] = "projectgate-test-signing-secret-0123456789"
os.environ["IDENTITY_ISSUER"] = "https://identity.projectgate.test"
os.environ["IDENTITY_AUDIENCE"] = "projectgate-api"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["AUDIT_SINK_MODE"] = "direct"

import pytest  # noqa: E402

from projectgate.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

from projectgate.domain.models import Base  # noqa: E402
from projectgate.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    # Env overrides made through monkeypatch must not leak into the next test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def fresh_schema() -> AsyncIterator[None]:
    # Recreate every table so each test starts from an empty database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
