"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses asyncpg driver for PostgreSQL in production and aiosqlite in tests.
"""

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import settings
from shared.exceptions import SchemaError


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": settings.DEBUG}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_pre_ping": True,       # Detect stale connections
        "pool_recycle": 3600,        # Recycle connections every hour
        "echo": settings.DEBUG,      # Log SQL in debug mode
    }


# ── Engine ────────────────────────────────────────────────────
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autoflush=False,
)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependencies ──────────────────────────────────────────────
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency: the transactional-session factory handed to the
    booking core. Tests override this with an in-memory engine.
    """
    return AsyncSessionLocal


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session for simple reads.
    Auto-commits on success, rolls back on error.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Migration ─────────────────────────────────────────────────
async def init_db(bind: AsyncEngine = None) -> None:
    """
    Create all tables. This is the explicit migration step: run it once at
    deployment (or at startup in development), never from a request handler.
    """
    import shared.models.models  # noqa: F401  (populate Base.metadata)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def verify_schema(bind: AsyncEngine = None) -> None:
    """Fail fast if any mapped table is missing from the database."""
    import shared.models.models  # noqa: F401

    async with (bind or engine).connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        raise SchemaError(
            "Database schema is missing required tables; run the migration step",
            details={"missing_tables": missing},
        )


async def ping_database() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
