import pytest
import pytest_asyncio
from datetime import datetime
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from circdesk.db import Base
from circdesk import models
from circdesk.catalog import register_book, register_subscriber

REGISTERED_AT = datetime(2020, 1, 1, 9, 0)

@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)

@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()

@pytest.fixture
def make_book(session):
    async def _make(title="Clean Code", total_copies=1, **kw) -> int:
        r = await register_book(session, title=title, total_copies=total_copies, **kw)
        assert r["ok"] is True
        return r["data"]["book_id"]
    return _make

@pytest.fixture
def make_subscriber(session):
    async def _make(full_name="Alice", email=None) -> int:
        r = await register_subscriber(session, full_name=full_name, email=email, now=REGISTERED_AT)
        assert r["ok"] is True
        return r["data"]["subscriber_id"]
    return _make
