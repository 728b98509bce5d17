from __future__ import annotations

import os
import tempfile

# The engine is built at import time, so the test database must be chosen first.
_DB_DIR = tempfile.mkdtemp(prefix="parcelnotify-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SMS_TRANSPORT"] = "fake"
os.environ["NOTIFY_SEND_PAUSE_MS"] = "0"
os.environ["SMS_SCHEDULER_ENABLED"] = "false"

import pytest  # noqa: E402

from parcelnotify.core.config import get_settings  # noqa: E402
from parcelnotify.domain.models import Base  # noqa: E402
from parcelnotify.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests flip settings through monkeypatch.setenv; drop cached values on both sides.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def fresh_schema(request: pytest.FixtureRequest) -> None:
    # Integration tests get tables rebuilt from the ORM metadata; unit tests never touch the store.
    if "integration" not in request.node.path.parts:
        yield
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose so pooled connections never outlive the test's event loop.
    await engine.dispose()
