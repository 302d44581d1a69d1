from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Must be set before importing modules that create the SQLAlchemy engine.
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="intercom-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{(_RUNTIME_DIR / 'intercom_test.db').as_posix()}"
os.environ["DATA_DIR"] = str(_RUNTIME_DIR)
# Ensure tests can rely on the schema existing without running Alembic.
os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"
os.environ["TELEPHONY_PLATFORM"] = "in_app"
os.environ["PUSH_API_KEY"] = "test-push-key"
os.environ.pop("BACKEND_ANON_KEY", None)
os.environ.pop("MEDIA_JOIN_TIMEOUT_SECONDS", None)


@pytest.fixture(scope="session")
def runtime_dir() -> Path:
    return _RUNTIME_DIR


@pytest.fixture(scope="session")
def app():
    import importlib

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def db():
    """Fresh call history and channel tables."""

    import asyncio

    from db.base import Base, engine, init_db

    async def _reset() -> None:
        await init_db()
        async with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
        await engine.dispose()

    asyncio.run(_reset())
    yield
