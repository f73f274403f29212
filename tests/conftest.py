"""Shared fixtures for the harvester test suite."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.db.models import Base, ScrapeTarget, Source
from src.scraper.process.writer import ScrapeWriter
from src.scraper.types import AdapterContext
from src.utils.url import canonicalize_url
from tests.helpers import FIXED_NOW, FakeClock


@pytest.fixture
def ctx():
    return AdapterContext(
        source_id="source-1",
        retailer_id="retailer-1",
        now=FIXED_NOW,
        target_id="target-1",
        run_id="run-1",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def writer(session_factory):
    return ScrapeWriter(session_factory)


@pytest.fixture
def make_source(session_factory):
    async def _make(**fields) -> Source:
        values = {
            "name": "SGAmmo",
            "retailer_id": "retailer-sgammo",
            "adapter_id": "sgammo",
            "base_url": "https://sgammo.com",
        }
        values.update(fields)
        async with session_factory() as db:
            source = Source(**values)
            db.add(source)
            await db.commit()
            return source

    return _make


@pytest.fixture
def make_target(session_factory):
    async def _make(source: Source, url: str, **fields) -> ScrapeTarget:
        values = {
            "source_id": source.id,
            "adapter_id": source.adapter_id or "sgammo",
            "url": url,
            "canonical_url": canonicalize_url(url),
        }
        values.update(fields)
        async with session_factory() as db:
            target = ScrapeTarget(**values)
            db.add(target)
            await db.commit()
            return target

    return _make
