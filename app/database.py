from collections.abc import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = structlog.get_logger()


def _engine_kwargs(url: str) -> dict:
    """Pool and SSL options for the configured backend.

    SQLite (tests, local scripts) takes neither pool sizing nor SSL connect args.
    """
    if url.startswith("sqlite"):
        return {"echo": settings.APP_DEBUG}
    connect_args: dict = {}
    if settings.is_production:
        connect_args["ssl"] = "require"
    return {
        "echo": settings.APP_DEBUG,
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": 3600,
        "pool_timeout": 30,
        "connect_args": connect_args,
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One transaction per request: commit on success, roll back on any error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("db_session_failed")
            raise
