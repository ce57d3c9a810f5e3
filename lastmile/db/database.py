"""
Database engine and sessions.

The API shares one engine per process. Celery tasks open a short-lived engine
per task because every task runs ``asyncio.run`` on a fresh loop and asyncpg
connections cannot cross loops.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from lastmile.core.config import settings


class Base(DeclarativeBase):
    pass


def engine_options(url: str, pooled: bool = True) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine; SQLite takes no pool sizing."""
    options: Dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if pooled and not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        )
    return options


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # services keep using rows after commit
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))
AsyncSessionLocal = session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Session on a private engine, disposed when the task finishes."""
    task_engine = create_async_engine(
        settings.DATABASE_URL, **engine_options(settings.DATABASE_URL, pooled=False)
    )
    try:
        async with session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
