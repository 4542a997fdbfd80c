"""
Swapmatch — Async Database Engine & Session Factory

The preference graph (items, swipes, matches, opportunities) lives in
PostgreSQL.  Two ways to reach it:

1. **Cloud SQL** – ``cloud-sql-python-connector`` with IAM authentication,
   used when ``CLOUD_SQL_USE_UNIX_SOCKET`` is set together with
   ``CLOUD_SQL_INSTANCE_CONNECTION``.
2. **Plain URL** – ``DATABASE_URL`` through asyncpg (local / CI).

Every unit of work (one swipe, one opportunity commit, one maintenance pass)
runs inside ``session_scope`` and commits on its own.  Connections carry a
statement timeout so a stuck query surfaces as a transient store error
instead of hanging a discovery partition.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import Settings, get_settings

logger = structlog.get_logger("swapmatch.database")


class Base(DeclarativeBase):
    """Declarative base shared by every ORM model."""


# ------------------------------------------------------------------ #
# Engine construction
# ------------------------------------------------------------------ #

def _server_settings(settings: Settings) -> dict[str, str]:
    return {
        "application_name": "swapmatch",
        "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
    }


def _engine_kwargs(settings: Settings) -> dict[str, Any]:
    return {
        "echo": settings.LOG_LEVEL == "DEBUG",
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _normalise_url(url: str) -> str:
    """Force the asyncpg dialect onto a bare ``postgresql://`` URL."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()

    if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
        from google.cloud.sql.connector import Connector

        connector = Connector()

        async def _connect():
            return await connector.connect_async(
                settings.CLOUD_SQL_INSTANCE_CONNECTION,
                "asyncpg",
                user=settings.DB_USER,
                password=settings.DB_PASSWORD,
                db=settings.DB_NAME,
                enable_iam_auth=True,
                server_settings=_server_settings(settings),
            )

        logger.info(
            "database_engine_created",
            mode="cloud_sql",
            instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
        )
        return create_async_engine(
            "postgresql+asyncpg://", async_creator=_connect, **_engine_kwargs(settings)
        )

    logger.info("database_engine_created", mode="url")
    return create_async_engine(
        _normalise_url(settings.DATABASE_URL),
        connect_args={"server_settings": _server_settings(settings)},
        **_engine_kwargs(settings),
    )


# ------------------------------------------------------------------ #
# Module-level engine & session factory
# ------------------------------------------------------------------ #

engine = build_engine()

async_session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ------------------------------------------------------------------ #
# Unit-of-work helper
# ------------------------------------------------------------------ #

@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Open a session with its own transaction; commit on clean exit."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
