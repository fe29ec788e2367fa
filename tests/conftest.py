# tests/conftest.py
import os

# app.database builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_reconciliation.db")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings, get_settings, get_webhook_secret
from app.database import Base
from app.dependencies import build_services, get_db
from app.main import create_app
from app import models  # noqa: F401  registers the tables on Base.metadata
from app.schemas.listing import CatalogSnapshot
from app.services.listing_store import SqlAlchemyListingRepository
from tests.mocks.mock_gateways import FakeMarketplace, FakeStorefront, RecordingAlerts

TEST_WEBHOOK_SECRET = "test_secret"


@pytest.fixture
def settings(tmp_path):
    """Provide test settings"""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        SHOPIFY_WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        SHOPIFY_LOCATION_GID="gid://shopify/Location/1",
        SCHEDULER_ENABLED=False,
        WORKER_CONCURRENCY=4,
        JOB_MAX_ATTEMPTS=3,
        JOB_BACKOFF_BASE_SECONDS=0.01,
        JOB_BACKOFF_MAX_SECONDS=0.05,
        GATEWAY_BACKOFF_BASE_SECONDS=0.0,
        GATEWAY_BACKOFF_MAX_SECONDS=0.0,
        ADMIN_USERNAME="admin",
        ADMIN_PASSWORD="secret",
    )


@pytest.fixture
async def test_engine(settings):
    """Create and configure a file-backed SQLite engine (function-scoped)."""
    engine = create_async_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repository(session_factory):
    return SqlAlchemyListingRepository(session_factory)


@pytest.fixture
def storefront():
    return FakeStorefront()


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
def alerts(settings):
    return RecordingAlerts(settings)


@pytest.fixture
def services(settings, session_factory, storefront, marketplace, alerts):
    """The full reconciliation pipeline wired to fake gateways"""
    return build_services(
        settings,
        session_factory=session_factory,
        storefront_gateway=storefront,
        marketplace_gateway=marketplace,
        alerts=alerts,
    )


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def make_listing(repository, storefront, marketplace):
    """Create a linked listing on both fakes and in the store"""
    async def _make(pid="100", price=50000, title="Fender Stratocaster", marketplace_status="SELLING"):
        product_id = f"gid://shopify/Product/{pid}0"
        item_id = f"gid://shopify/InventoryItem/{pid}0"
        storefront.add_product(product_id, title, item_id)
        if marketplace_status is not None:
            marketplace.set_item(pid, status=marketplace_status, price=price)
        return await repository.upsert_from_catalog(CatalogSnapshot(
            marketplace_pid=pid,
            storefront_id=product_id,
            storefront_inventory_item_id=item_id,
            title=title,
            original_price_minor=price,
        ))
    return _make


@pytest.fixture
async def api_client(services, settings, session_factory):
    """Async HTTP client for the app, wired to the fake-gateway services"""
    app = create_app(services=services, start_background=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_webhook_secret] = lambda: TEST_WEBHOOK_SECRET
    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
