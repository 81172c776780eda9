"""Pytest configuration and fixtures."""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from folio.main import app
from folio.models import Base, get_session, Account, Asset, SubPortfolio
from folio.services import accounting
from folio.services.accounting import PairLockRegistry


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def fresh_pair_locks(monkeypatch):
    """Pair locks are bound to an event loop; give each test its own registry."""
    registry = PairLockRegistry()
    monkeypatch.setattr(accounting, "pair_locks", registry)
    return registry


@pytest.fixture(scope="function")
async def test_db():
    """Create a fresh test database for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """Session factory over a file database (for tests needing several sessions)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'folio_test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def client(test_db):
    """Create test client with test database."""

    async def override_get_session():
        yield test_db

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def sample_account(test_db):
    """Create a sample brokerage account."""
    account = Account(name="Brokerage")
    test_db.add(account)
    await test_db.commit()
    return account


@pytest.fixture
async def sample_sub_portfolio(test_db):
    """Create a sample sub-portfolio."""
    sub_portfolio = SubPortfolio(name="Core")
    test_db.add(sub_portfolio)
    await test_db.commit()
    return sub_portfolio


@pytest.fixture
async def sample_asset(test_db, sample_sub_portfolio):
    """Create a sample asset (VTI, US large-cap equity ETF)."""
    asset = Asset(
        ticker="VTI",
        name="Vanguard Total Stock Market ETF",
        asset_type="Equity",
        asset_subtype="ETF",
        geography="US",
        size_tag="Large Cap",
        factor_tag="Blend",
        sub_portfolio_id=sample_sub_portfolio.id,
    )
    test_db.add(asset)
    await test_db.commit()
    return asset


@pytest.fixture
async def second_asset(test_db):
    """Create a second asset with no sub-portfolio."""
    asset = Asset(
        ticker="BND",
        name="Vanguard Total Bond Market ETF",
        asset_type="Bond",
        asset_subtype="ETF",
        geography="US",
    )
    test_db.add(asset)
    await test_db.commit()
    return asset
