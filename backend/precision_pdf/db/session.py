"""
Database engine and session factory construction.

Flow:
  1. The FastAPI lifespan hook calls create_engine() once per process and
     builds a session factory from it.
  2. The factory is handed to SqlDocumentRecordStore, which opens one short
     session per operation (every record write is its own transaction).
  3. On shutdown the lifespan hook disposes the engine.

Celery workers run each task under a fresh event loop, so they build their
engine with NullPool — pooled asyncpg connections cannot cross loops.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from precision_pdf.core.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine(cfg: Settings, *, null_pool: bool = False) -> AsyncEngine:
    """Build the async engine from settings."""
    if null_pool:
        return create_async_engine(
            cfg.database_url,
            poolclass=NullPool,
            echo=cfg.db_echo_sql,
        )
    return create_async_engine(
        cfg.database_url,
        pool_size=cfg.db_pool_size,
        max_overflow=cfg.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=cfg.db_echo_sql,        # log SQL in dev; disable in prod
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by the readiness endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
