"""
Async database session management using SQLAlchemy 2.0.
Provides connection pooling and session lifecycle management.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import Settings, get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    url = str(settings.database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.debug)
    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_pre_ping=True,  # Verify connections before use
        echo=settings.debug,  # SQL logging in debug mode
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database engine and session factory.

    Called during application startup to establish the connection pool.
    """
    global _engine, _session_factory

    settings = settings or get_settings()
    _engine = build_engine(settings)
    _session_factory = build_session_factory(_engine)

    if settings.database_auto_create:
        from app.db.models import Base

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_created")

    return _session_factory


async def close_db() -> None:
    """
    Close the database engine and connection pool.

    Called during application shutdown to cleanly release resources.
    """
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
