"""Async engine and session factory shared by the API, jobs and scripts."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from loyalty_ledger.core.settings import settings


def enable_sqlite_savepoints(async_engine: AsyncEngine) -> AsyncEngine:
    """Let SQLAlchemy own BEGIN on SQLite so SAVEPOINTs nest inside the outer transaction."""

    if async_engine.dialect.name != "sqlite":
        return async_engine

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _emit_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")

    return async_engine


engine = enable_sqlite_savepoints(
    create_async_engine(settings.database_url, echo=settings.database_echo, future=True)
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session
