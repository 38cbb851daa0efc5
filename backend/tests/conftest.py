"""
Shared fixtures: temporary local stores, snapshot directories, app stores and
an HTTP client bound to the sync server with its own database.
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from scholartrack.client.app_store import AppStore
from scholartrack.client.local_store import LocalStore
from scholartrack.core.config import Settings
from scholartrack.core.database import Base, get_db, create_server_engine
from scholartrack.main import app
from scholartrack.services.migration.snapshots import SnapshotStore


@pytest.fixture
def test_settings(tmp_path):
    """Settings with sync switched off and small batches."""
    return Settings(
        LOCAL_DB_PATH=str(tmp_path / "local.db"),
        SNAPSHOT_DIR=str(tmp_path / "snapshots"),
        MIGRATION_BATCH_SIZE=2,
        AUTO_SYNC=False,
        SYNC_ON_STARTUP=False,
    )


@pytest_asyncio.fixture
async def local_store(tmp_path):
    """A local store opened at the latest schema version."""
    store = LocalStore(str(tmp_path / "local.db"), name="test")
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def snapshot_store(tmp_path):
    return SnapshotStore(str(tmp_path / "snapshots"), max_snapshots=10)


@pytest_asyncio.fixture
async def app_store(local_store, snapshot_store, test_settings):
    """An initialized app store without a sync client."""
    store = AppStore(local_store, snapshot_store, sync_client=None, settings=test_settings)
    await store.init()
    return store


@pytest_asyncio.fixture
async def server_sessions(tmp_path):
    """Session factory for a fresh server database."""
    engine = create_server_engine(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(server_sessions):
    """HTTP client for the sync server, backed by the per-test database."""

    async def override_get_db():
        async with server_sessions() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def make_student(student_id="s1", label="ALEX", code="1001", emoji="🐶", classes=None):
    return {
        "id": student_id,
        "label": label,
        "code": code,
        "emoji": emoji,
        "classes": classes if classes is not None else ["Period 1"],
        "createdAt": "2024-09-01T08:00:00+00:00",
    }


def make_transaction(status="RESTROOM", code="1001", label="ALEX",
                     timestamp="2024-09-01T09:00:00+00:00", class_name="Period 1", **extra):
    transaction = {
        "studentLabel": label,
        "studentCode": code,
        "studentIdentifier": f"{label}-dog face",
        "status": status,
        "timestamp": timestamp,
        "className": class_name,
    }
    transaction.update(extra)
    return transaction
