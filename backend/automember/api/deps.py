"""FastAPI dependencies wiring the engine to the configured databases."""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automember.approval_engine import ApprovalEngine
from automember.db import registry_session_factory, staging_session_factory
from automember.registry_client import RegistryClient


@lru_cache(maxsize=1)
def get_approval_engine() -> ApprovalEngine:
    return ApprovalEngine(staging_session_factory, RegistryClient(registry_session_factory))


def get_staging_session_factory() -> async_sessionmaker[AsyncSession]:
    return staging_session_factory
