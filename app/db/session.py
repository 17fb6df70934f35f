"""
Database Session Management
===========================

Provides the async engine and session factory.

The premium reconciler opens its own short transactions from the session
factory, so every read-modify-write commits or rolls back as a unit no
matter what the surrounding request does.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite (local runs and tests) is switched to ``BEGIN IMMEDIATE`` so that
    concurrent transactions take the write lock up-front and serialize the
    same way row locks serialize them on PostgreSQL.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(url, **kwargs)


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Uses connection pooling with the following configuration:
    - pool_size: 20 connections
    - max_overflow: 40 additional connections
    - pool_recycle: Recycle connections every 5 minutes
    - pool_use_lifo: Prefer the most-recently-returned connection
    """
    global _engine

    if _engine is None:
        url = settings.database_url_async
        if not url:
            raise ValueError(
                "Database URL not configured. "
                "Please set DATABASE_URL environment variable."
            )

        if url.startswith("sqlite"):
            _engine = build_engine(url)
        else:
            _engine = build_engine(
                url,
                echo=settings.is_development,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=False,
                pool_recycle=300,
                pool_use_lifo=True,
                pool_timeout=30,
            )

    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every caller relies on."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())

    return _async_session_factory


async def init_db() -> None:
    """
    Initialize database connection.

    Called on application startup.
    """
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

    logger.info("Database connection established")


async def close_db() -> None:
    """
    Close database connections.

    Called on application shutdown to clean up resources.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
