"""
Tests for the server database engine and the request session dependency.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import text

from scholartrack.core import database
from scholartrack.core.database import create_server_engine, get_db


def fake_session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


@pytest.mark.asyncio
async def test_sqlite_connections_get_pragmas(tmp_path):
    engine = create_server_engine(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}")
    try:
        async with engine.connect() as conn:
            assert (await conn.execute(text("PRAGMA foreign_keys"))).scalar() == 1
            assert (await conn.execute(text("PRAGMA journal_mode"))).scalar() == "wal"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_get_db_rolls_back_when_the_request_fails(monkeypatch):
    session = MagicMock()
    session.rollback = AsyncMock()
    monkeypatch.setattr(database, "AsyncSessionLocal", fake_session_factory(session))

    dependency = get_db()
    assert await dependency.__anext__() is session
    with pytest.raises(RuntimeError):
        await dependency.athrow(RuntimeError("handler failed"))

    session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_get_db_leaves_successful_requests_alone(monkeypatch):
    session = MagicMock()
    session.rollback = AsyncMock()
    monkeypatch.setattr(database, "AsyncSessionLocal", fake_session_factory(session))

    dependency = get_db()
    await dependency.__anext__()
    await dependency.aclose()

    session.rollback.assert_not_awaited()
