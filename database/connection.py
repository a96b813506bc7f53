"""
Database connection utilities for the CV portal service
Provides engine/session management for the SQL-backed document store
"""

import os
import logging
from typing import Optional, AsyncGenerator
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


class DatabaseConfig:
    """Database configuration management"""

    def __init__(self, url: Optional[str] = None):
        self.host = os.getenv('DB_HOST', 'localhost')
        self.port = int(os.getenv('DB_PORT', '5432'))
        self.database = os.getenv('DB_NAME', 'cv_portals')
        self.username = os.getenv('DB_USER')
        self.password = os.getenv('DB_PASSWORD')
        self.pool_size = int(os.getenv('DB_POOL_SIZE', '10'))
        self.max_overflow = int(os.getenv('DB_MAX_OVERFLOW', '20'))
        self.pool_timeout = int(os.getenv('DB_POOL_TIMEOUT', '30'))
        self.pool_recycle = int(os.getenv('DB_POOL_RECYCLE', '3600'))
        self.echo = os.getenv('DB_ECHO', 'false').lower() == 'true'
        self._url = url or os.getenv('DATABASE_URL')

    @property
    def async_url(self) -> str:
        """Asynchronous database URL"""
        if self._url:
            return self._url
        return f"postgresql+asyncpg://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"


class DatabaseManager:
    """Async engine and session management"""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._async_engine: Optional[AsyncEngine] = None
        self._async_session_factory = None

    def get_async_engine(self) -> AsyncEngine:
        """Get asynchronous database engine"""
        if self._async_engine is None:
            kwargs = {"echo": self.config.echo, "pool_pre_ping": True}
            if self.config.async_url.startswith("postgresql"):
                kwargs.update(
                    pool_size=self.config.pool_size,
                    max_overflow=self.config.max_overflow,
                    pool_timeout=self.config.pool_timeout,
                    pool_recycle=self.config.pool_recycle,
                )
            self._async_engine = create_async_engine(self.config.async_url, **kwargs)
        return self._async_engine

    def get_async_session_factory(self):
        """Get asynchronous session factory"""
        if self._async_session_factory is None:
            self._async_session_factory = async_sessionmaker(
                bind=self.get_async_engine(),
                class_=AsyncSession,
                autoflush=False,
                expire_on_commit=False
            )
        return self._async_session_factory

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session; commits on success, rolls back on error"""
        session_factory = self.get_async_session_factory()
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database session error: {e}")
                raise

    async def create_tables(self) -> None:
        """Create the document table if it does not exist"""
        # Register models on Base.metadata
        from database import models  # noqa: F401

        async with self.get_async_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def test_connection(self) -> bool:
        """Test database connectivity"""
        try:
            async with self.get_async_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    async def close(self):
        """Close database connections"""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None


async def init_database(manager: DatabaseManager) -> bool:
    """Create tables and verify connectivity on startup.
    Returns True on success, False on failure.
    """
    try:
        await manager.create_tables()
        ok = await manager.test_connection()
        if not ok:
            logger.error("Database connectivity test failed after initialization")
            return False
        logger.info("Database initialized (tables ensured, connectivity verified)")
        return True
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        return False
