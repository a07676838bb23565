"""
Test Suite Configuration
"""
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from catalog.database.connection import get_db_dependency
from catalog.database.models import Base
from catalog.services.categories import CategoryService


@pytest.fixture
async def test_engine():
    """In-memory SQLite engine; StaticPool keeps one connection so every session sees the schema"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def beverages_tree(test_db) -> SimpleNamespace:
    """beverages -> coffee, tea"""
    service = CategoryService(test_db)
    beverages = await service.create("Beverages")
    coffee = await service.create("Coffee", parent_id=beverages.id)
    tea = await service.create("Tea", parent_id=beverages.id)
    return SimpleNamespace(beverages=beverages, coffee=coffee, tea=tea)


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with one committed session per request"""
    from catalog.main import app

    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_dependency] = override_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
