"""Shared test fixtures."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from budgetline.config import settings
from budgetline.core.cache import TTLCache, categories_cache, rules_cache
from budgetline.core.database import get_db
from budgetline.main import app
from budgetline.models import (
    Base,
    Category,
    CategoryCorrection,
    CategoryMapping,
    Transaction,
)
from fakes import FakeClock


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep tests off real AI providers and reset process-wide caches."""
    monkeypatch.setattr(settings, "ai_categorisation_provider", "anthropic")
    monkeypatch.setattr(settings, "anthropic_api_key", "")
    monkeypatch.setattr(settings, "openai_api_key", "")
    rules_cache.invalidate()
    categories_cache.invalidate()
    yield
    rules_cache.invalidate()
    categories_cache.invalidate()


@pytest.fixture
async def engine():
    """In-memory SQLite with working SAVEPOINTs."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
async def categories(db):
    """A small category tree keyed by short name."""
    rows = {
        "groceries": Category(id="cat-groceries", name="Groceries", group_name="Living", display_order=1),
        "eating_out": Category(id="cat-eating-out", name="Eating Out", group_name="Living", display_order=2),
        "entertainment": Category(
            id="cat-entertainment", name="Entertainment", group_name="Leisure", display_order=1
        ),
        "transport": Category(id="cat-transport", name="Transport", group_name="Travel", display_order=1),
        "salary": Category(
            id="cat-salary", name="Salary", group_name="Income", is_income=True, display_order=1
        ),
    }
    db.add_all(rows.values())
    await db.flush()
    return rows


@pytest.fixture
def add_rule(db):
    async def _add(pattern, category, match_type="exact", confidence=0.9, is_system=False, **kwargs):
        rule = CategoryMapping(
            pattern=pattern,
            category_id=category.id,
            match_type=match_type,
            confidence=confidence,
            is_system=is_system,
            **kwargs,
        )
        db.add(rule)
        await db.flush()
        return rule

    return _add


@pytest.fixture
def add_transaction(db):
    async def _add(description, category=None, amount="-10.00", days_ago=0):
        txn = Transaction(
            date=date.today() - timedelta(days=days_ago),
            description=description,
            amount=Decimal(amount),
            category_id=category.id if category else None,
        )
        db.add(txn)
        await db.flush()
        return txn

    return _add


@pytest.fixture
def add_correction(db):
    async def _add(description, corrected, original=None, days_ago=0, **kwargs):
        correction = CategoryCorrection(
            description=description,
            corrected_category_id=corrected.id,
            original_category_id=original.id if original else None,
            original_source="none",
            created_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
            **kwargs,
        )
        db.add(correction)
        await db.flush()
        return correction

    return _add


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fresh_rules_cache(clock):
    return TTLCache(settings.rules_cache_ttl, name="rules-test", clock=clock)


@pytest.fixture
async def client(db):
    """Async test client for the FastAPI app, bound to the test session."""

    async def _get_test_db():
        yield db

    app.dependency_overrides[get_db] = _get_test_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
