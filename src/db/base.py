"""Async engine, session factory and declarative base for the call store."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base model."""


def _ensure_sqlite_parent(database_url: str) -> None:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite") or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


settings = get_settings()
_ensure_sqlite_parent(settings.database_url)
engine = create_async_engine(settings.database_url, echo=False, future=True)
AsyncSessionFactory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def init_db() -> None:
    """Create the calls tables when ``AUTO_CREATE_DB_SCHEMA`` is on.

    Deployed environments run the Alembic migration instead.
    """

    if not settings.auto_create_db_schema:
        return

    # Registers CallRecord/TranscriptLine on Base.metadata.
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    LOGGER.info("Database schema ensured at %s", make_url(settings.database_url).render_as_string(hide_password=True))
