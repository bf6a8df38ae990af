from __future__ import annotations

import os
import tempfile
from pathlib import Path

# The engine is built at import time, so the test database must be chosen before castline is imported.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="castline-tests-"))
os.environ["DATABASE_URL"] = os.environ.get("CASTLINE_TEST_DATABASE_URL") or (
    f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'castline.db'}"
)
os.environ["BROADCAST_EXECUTION_MODE"] = "inline"
os.environ["EMAIL_PROVIDER"] = "fake"
os.environ["ADMIN_API_KEYS"] = "test-admin-key"
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUTH_DEV_BYPASS"] = "false"

import pytest  # noqa: E402

from castline.core.config import get_settings  # noqa: E402
from castline.domain.models import Base  # noqa: E402
from castline.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Every test starts from empty tables on a connection bound to its own loop.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    get_settings.cache_clear()
    await engine.dispose()
