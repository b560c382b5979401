"""
Async SQLAlchemy engine, session factory and declarative base.
"""

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from docledger.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str = settings.DATABASE_URL, echo: bool = settings.DB_ECHO):
    """Create an async engine. Pool sizing only applies to server databases."""
    kwargs = {"echo": echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


engine = build_engine()

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session that is closed when the caller is done."""
    async with async_session_factory() as session:
        yield session


async def close_db() -> None:
    """Dispose the engine's connection pool."""
    await engine.dispose()
