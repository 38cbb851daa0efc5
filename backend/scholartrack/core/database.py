"""
Server database: declarative base, engine and request-scoped sessions.

The sync server keeps one row per synced record. SQLite connections are
opened with foreign keys enforced and write-ahead logging, so a down-sync
can read while an up-sync is committing.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import MetaData, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from scholartrack.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


class Base(DeclarativeBase):
    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "pk": "pk_%(table_name)s"
        }
    )


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def create_server_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Async engine for the server store; SQLite URLs get the connection pragmas."""
    server_engine = create_async_engine(url, echo=echo)
    if make_url(url).get_backend_name() == "sqlite":
        event.listen(server_engine.sync_engine, "connect", _set_sqlite_pragmas)
    return server_engine


engine = create_server_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; uncommitted work is rolled back if the handler raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    # Registers the server tables on Base.metadata
    from scholartrack.models import roster  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Server database ready at {engine.url.render_as_string(hide_password=True)}")


async def close_db():
    await engine.dispose()
    logger.info("Server database connections closed")
