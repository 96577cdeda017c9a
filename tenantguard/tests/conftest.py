from __future__ import annotations

import os

# Point settings at SQLite and the in-process counter store before tenantguard modules load.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RL_BACKEND"] = "memory"

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenantguard.apps.api.deps import get_authorization_chain
from tenantguard.core.config import get_settings
from tenantguard.domain.models import Base
from tenantguard.services.audit import get_audit_writer
from tenantguard.services.rate_limit import reset_rate_limiter_state


@pytest.fixture(autouse=True)
def reset_cached_state() -> None:
    # Settings, chain and writer are process-wide caches; rebuild them per test.
    get_settings.cache_clear()
    get_audit_writer.cache_clear()
    get_authorization_chain.cache_clear()
    reset_rate_limiter_state()
    yield
    get_settings.cache_clear()
    get_audit_writer.cache_clear()
    get_authorization_chain.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions (audit tasks, loaders) get their own connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenantguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
