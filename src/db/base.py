"""Async database engine and declarative base for call records."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config.settings import get_settings


class Base(DeclarativeBase):
    """Declarative base model."""


settings = get_settings()
engine = create_async_engine(settings.database_url, echo=False)
AsyncSessionFactory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Create the caller/conversation tables when auto-creation is enabled.

    Outside local/dev, run ``alembic upgrade head`` and set
    `AUTO_CREATE_DB_SCHEMA=false`.
    """

    if not settings.auto_create_db_schema:
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db() -> None:
    await engine.dispose()
