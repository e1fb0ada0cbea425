"""
Engine and session management.

Postgres (asyncpg) is the production backend. SQLite (aiosqlite) is
accepted for local runs and tests; its driver transaction handling is
switched off so that settlement savepoints behave as they do on Postgres.
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_settlement.config import Settings, get_settings
from payment_settlement.database.models import Base

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def engine_options(settings: Settings) -> Dict[str, Any]:
    """
    Keyword arguments for create_async_engine.

    Queue pool sizing only applies to server databases; SQLite gets the
    driver's default pool.
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if not is_sqlite(settings.database_url):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return options


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy issue BEGIN on SQLite connections.

    pysqlite otherwise opens and commits transactions on its own schedule,
    which breaks SAVEPOINT (begin_nested) used by the audit sink, the
    transaction insert and the order flip.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        if is_sqlite(settings.database_url):
            enable_sqlite_savepoints(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Return the process-wide session factory.

    Objects stay readable after commit (expire_on_commit=False) because the
    services keep using the rows they settled to build responses. Autoflush
    is off; conditional UPDATEs run as core statements and do not need it.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding one session per request.

    Commit policy:
        - The services own their units of work. IntentManager, the
          verification engine and SettlementStateMachine commit the state
          change together with its audit entry and outbox event, and every
          rejected branch commits its audit entry before raising.
        - On a normal response this commits whatever is still pending,
          which covers the rate-limit routes that only record counters.
        - On an exception the session is rolled back. Anything a service
          did not commit before raising is discarded, so error paths that
          must leave a trace commit first.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create missing tables."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
