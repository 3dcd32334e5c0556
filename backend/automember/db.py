"""Async SQLAlchemy engines + session factories.

Two databases are in play: the local staging store (staging records and the
audit log) and the external customer registry.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from automember.config import settings


def _engine_kwargs(url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "echo": (settings.APP_ENV == "development"),
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20)
    return kwargs


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, **_engine_kwargs(url))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


staging_engine = build_engine(settings.STAGING_DATABASE_URL)
staging_session_factory = build_session_factory(staging_engine)

registry_engine = build_engine(settings.REGISTRY_DATABASE_URL)
registry_session_factory = build_session_factory(registry_engine)


class Base(DeclarativeBase):
    """Declarative base for the staging store models."""


class RegistryBase(DeclarativeBase):
    """Declarative base for the customer registry tables."""


async def get_session() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency: yields a staging store session."""
    async with staging_session_factory() as session:
        yield session


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database:
        return
    if parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


async def init_staging_schema(engine: AsyncEngine | None = None) -> None:
    """Create staging store tables if missing."""
    import automember.models  # noqa: F401

    engine = engine or staging_engine
    _ensure_sqlite_dir(str(engine.url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
