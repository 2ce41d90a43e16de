"""
Database session management for SQLAlchemy with async support

Supports both FastAPI (explicit init) and the Celery worker / scripts (lazy init).
"""
import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DatabaseSessionManager:
    """Manage database connections and sessions"""

    def __init__(self):
        self._engine = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        """Check if session manager is initialized"""
        return self._sessionmaker is not None

    @property
    def engine(self):
        """Underlying async engine (None until init)"""
        return self._engine

    async def init(self, database_url: str, **engine_kwargs):
        """Initialize database engine and session maker"""
        if self.initialized:
            return

        async with self._init_lock:  # Double-checked locking
            if self.initialized:
                return

            # Convert postgresql:// to postgresql+asyncpg://
            if database_url.startswith("postgresql://"):
                database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

            # Default engine settings; pool sizing only applies to queue pools
            if "poolclass" in engine_kwargs:
                default_kwargs = {"echo": engine_kwargs.get("echo", False)}
            else:
                default_kwargs = {
                    "echo": engine_kwargs.get("echo", False),
                    "pool_size": 20,
                    "max_overflow": 10,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600,
                }
            default_kwargs.update(engine_kwargs)

            self._engine = create_async_engine(database_url, **default_kwargs)

            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

    async def create_all(self):
        """Create all tables (tests and local development only; production uses Alembic)"""
        if self._engine is None:
            raise RuntimeError("DatabaseSessionManager not initialized")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections"""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions"""
        if not self.initialized:
            raise RuntimeError("DatabaseSessionManager not initialized")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# Global session manager instance
sessionmanager = DatabaseSessionManager()


# ---- Lazy auto-init for the worker and standalone scripts --------------------------------

async def ensure_initialized(**engine_kwargs):
    """
    Ensure database session manager is initialized.

    This allows the worker and scripts to work without an explicit init() call
    by reading DATABASE_URL from settings. Can be disabled in production with
    DB_LAZY_INIT=0 for stricter control.
    """
    if sessionmanager.initialized:
        return

    # Optional feature flag to disable lazy init in production
    if os.getenv("DB_LAZY_INIT", "1") not in {"1", "true", "True"}:
        raise RuntimeError(
            "Database lazy init disabled and session manager not initialized. "
            "Call sessionmanager.init(DATABASE_URL) explicitly in startup."
        )

    from packages.common.config import get_settings

    echo = os.getenv("SQL_ECHO", "0") in {"1", "true", "True"}
    await sessionmanager.init(get_settings().database_url, echo=echo, **engine_kwargs)


# Dependency for FastAPI and standalone scripts
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session (works in FastAPI and standalone scripts).

    In FastAPI: Expects sessionmanager.init() called during startup.
    In scripts: Auto-initializes from DATABASE_URL if not already initialized.
    """
    await ensure_initialized()
    async with sessionmanager.session() as session:
        yield session
