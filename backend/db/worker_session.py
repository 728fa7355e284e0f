"""Worker-safe database session for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


@asynccontextmanager
async def worker_session():
    """Provide an async session bound to a task-local engine.

    Usage:
        async with worker_session() as session:
            item = await QueueDispatcher(session).claim_next()
    """
    settings = get_settings()
    kwargs = dict(echo=False)
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=5, pool_recycle=300)
    engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )
    try:
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()
