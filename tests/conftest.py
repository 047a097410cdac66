"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base, AdminRow, utcnow
from src.db.engine import get_session

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Background work (SSE ticks, webhook delivery) opens its own sessions
import src.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

SHOP = "demo-shop"
ADMIN_PASSWORD = "correct-horse-battery"


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import src.db.affiliate_tables  # noqa: F401
    import src.analytics.tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def admin():
    from src.auth import hash_password

    async with TestSession() as session:
        row = AdminRow(email="owner@demo-shop.com", password_hash=hash_password(ADMIN_PASSWORD), shop_id=SHOP)
        session.add(row)
        await session.commit()
        return row


@pytest_asyncio.fixture
async def admin_headers(admin):
    from src.auth import create_admin_session

    async with TestSession() as session:
        admin_session = await create_admin_session(session, admin)
    return {"Authorization": f"Bearer {admin_session.token}"}


# ── Seed helpers ─────────────────────────────────────────────────────────────

async def make_offer(session: AsyncSession, **overrides):
    from src.db.affiliate_tables import OfferRow

    values = dict(
        shop_id=SHOP, offer_number=1, name="Default 10%",
        commission_type="percentage", amount=10.0, currency="USD",
        selling_subscriptions="no",
    )
    values.update(overrides)
    offer = OfferRow(**values)
    session.add(offer)
    await session.commit()
    return offer


async def make_affiliate(session: AsyncSession, number: int = 1, **overrides):
    from src.db.affiliate_tables import AffiliateRow

    values = dict(
        shop_id=SHOP, affiliate_number=number, name=f"Affiliate {number}",
        email=f"aff{number}@partners.test", payout_terms_days=30, status="active",
    )
    values.update(overrides)
    affiliate = AffiliateRow(**values)
    session.add(affiliate)
    await session.commit()
    return affiliate


async def make_commission(session: AsyncSession, affiliate, status: str = "pending", **overrides):
    from src.db.affiliate_tables import CommissionRow

    now = utcnow()
    values = dict(
        shop_id=SHOP, affiliate_id=affiliate.id, order_id=f"order-{now.timestamp()}",
        amount=25.0, currency="USD", status=status,
        eligible_date=now + timedelta(days=affiliate.payout_terms_days), created_at=now,
    )
    values.update(overrides)
    commission = CommissionRow(**values)
    session.add(commission)
    await session.commit()
    return commission


async def make_flag(session: AsyncSession, commission, resolved: bool = False):
    from src.db.affiliate_tables import FraudFlagRow

    flag = FraudFlagRow(
        shop_id=commission.shop_id, commission_id=commission.id,
        flag_type="self_referral", score=50, reason="Email matches affiliate email",
        resolved=resolved,
    )
    session.add(flag)
    await session.commit()
    return flag
