"""SQLAlchemy async database setup and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings

settings = get_settings()


def create_db_engine(database_url: str = None):
    """Create and configure async SQLAlchemy engine.

    Args:
        database_url: Override for settings.DATABASE_URL.

    Returns:
        Async SQLAlchemy engine instance.
    """
    url = database_url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine):
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory instances
engine = create_db_engine()
AsyncSessionLocal = create_session_factory(engine)


async def init_db():
    """Create all workflow tables.

    This should be called once at application startup.
    """
    from db.base import Base
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections.

    This should be called at application shutdown.
    """
    await engine.dispose()
