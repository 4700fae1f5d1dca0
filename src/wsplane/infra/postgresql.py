"""Record store engine lifecycle.

One AsyncEngine per process. The control plane builds its SqlRecordStore
from the session factory after init_db() has verified connectivity.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool
from sqlmodel import SQLModel

from wsplane.app.config import DatabaseConfig, get_settings
from wsplane.core import models  # noqa: F401  (registers tables)
from wsplane.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(config: DatabaseConfig) -> AsyncEngine:
    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=1800,
        pool_pre_ping=True,
        poolclass=AsyncAdaptedQueuePool,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create users, groups, memberships, workspaces and settings if absent."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def init_db() -> None:
    global _engine, _session_factory

    config = get_settings().database
    engine = _build_engine(config)

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        if config.create_tables:
            await create_tables(engine)
    except Exception as exc:
        logger.error(
            "Record store unreachable at startup",
            extra={"event": LogEvent.STORE_UNAVAILABLE, "error_type": type(exc).__name__},
        )
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    logger.info(
        "Record store ready",
        extra={
            "event": LogEvent.STORE_CONNECTED,
            "pool_size": config.pool_size,
            "tables_created": config.create_tables,
        },
    )


async def close_db() -> None:
    global _engine, _session_factory

    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("init_db() has not been awaited")
    return _session_factory
