"""Shared fixtures.

Unit tests need nothing. Integration tests need DATABASE_URL pointing at a
PostgreSQL database the suite may create the ``platform`` and ``audit``
schemas in; they are skipped otherwise. Every integration test works inside
a fresh organization id, so runs never see each other's rows.
"""
import os
import uuid

import pytest
import pytest_asyncio
from sqlalchemy import text

# Tests open and close their own event loops; pooled asyncpg connections
# must not outlive the loop that created them.
os.environ.setdefault("DB_NULL_POOL", "1")

from db import cache
from db.context import RequestContext


_schema_ready = False


async def _ensure_schema() -> None:
    global _schema_ready
    if _schema_ready:
        return
    from db.connection import get_db, get_engine
    from db.models import Base
    from db.repositories import audit as audit_repo

    async with get_engine().begin() as conn:
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS platform"))
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS audit"))
        await conn.run_sync(Base.metadata.create_all)
    async with get_db() as session:
        await audit_repo.ensure_audit_partitions(session)
    _schema_ready = True


@pytest.fixture(autouse=True)
def _fresh_cache():
    cache.clear_all()
    yield
    cache.clear_all()


@pytest_asyncio.fixture
async def platform_db():
    await _ensure_schema()
    yield


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(organization_id=uuid.uuid4(), user_id=uuid.uuid4())


@pytest.fixture
def suffix() -> str:
    return uuid.uuid4().hex[:10]
