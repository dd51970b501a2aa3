"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the GigEscrow payment
engine. PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs
and tests.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Convert a plain PostgreSQL URL to its asyncpg form"""
    async_url = database_url
    if async_url.startswith("postgres://"):
        async_url = async_url.replace("postgres://", "postgresql://", 1)
    if async_url.startswith("postgresql://"):
        async_url = async_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    async_url = async_url.replace("sslmode=require", "ssl=require")
    async_url = async_url.replace("sslmode=prefer", "ssl=prefer")
    async_url = async_url.replace("sslmode=disable", "ssl=disable")
    return async_url


def build_async_engine(database_url: Optional[str] = None, **overrides) -> AsyncEngine:
    """Create an async engine, with pooling settings only where the driver supports them"""
    url = to_async_url(database_url or Config.DATABASE_URL)
    kwargs: Dict[str, Any] = {"echo": Config.DATABASE_ECHO}

    if url.startswith("postgresql+asyncpg"):
        kwargs.update(
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,     # Validate connections before use
            pool_recycle=3600,      # Recycle connections every hour
            pool_timeout=30,
            connect_args={
                "server_settings": {"application_name": "gigescrow_payment_engine"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )

    kwargs.update(overrides)
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Rows are read after commit by background tasks
    )


def get_async_engine() -> AsyncEngine:
    """Process-wide engine, created on first use"""
    global _async_engine
    if _async_engine is None:
        _async_engine = build_async_engine()
        logger.info("✅ DATABASE: Async engine created")
    return _async_engine


def get_async_session_factory() -> async_sessionmaker:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_async_engine())
    return _async_session_factory


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions"""
    factory = session_factory or get_async_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = engine or get_async_engine()
    try:
        logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models)...")
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database schema verified")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


async def verify_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Run SELECT 1 against the database"""
    target = engine or get_async_engine()
    try:
        async with target.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


def get_pool_stats(engine: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    """Connection pool statistics for monitoring"""
    target = engine or get_async_engine()
    pool = target.sync_engine.pool
    stats: Dict[str, Any] = {"pool_class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        getter = getattr(pool, name, None)
        if callable(getter):
            stats[name] = getter()
    return stats


async def dispose_engine():
    """Close pooled connections on shutdown"""
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("🔌 DATABASE: Async engine disposed")
    _async_engine = None
    _async_session_factory = None
