"""Shared fixtures: an in-memory SQLite database and a few parties.

Services only ``flush``; each test runs inside one session that is thrown
away with the engine afterwards.
"""

from datetime import date

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import coopledger.models  # noqa: F401  registers every table on Base.metadata
from coopledger.database import Base
from coopledger.models.party import Party, PartySide, CustomerWallet

TENANT = 1
OTHER_TENANT = 2


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def make_party(
    db: AsyncSession,
    code: str,
    side: PartySide = PartySide.RECEIVABLE,
    *,
    tenant_id: int = TENANT,
    credit_limit: int = 0,
    credit_terms_days: int | None = None,
    is_member: bool = True,
) -> Party:
    party = Party(
        tenant_id=tenant_id,
        side=side,
        code=code,
        name=f"Party {code}",
        is_member=is_member,
        credit_limit=credit_limit,
        credit_terms_days=credit_terms_days,
        outstanding_total=0,
    )
    db.add(party)
    await db.flush()
    return party


@pytest_asyncio.fixture
async def customer(db):
    return await make_party(db, "C-001", credit_limit=1_000_000)


@pytest_asyncio.fixture
async def supplier(db):
    return await make_party(db, "S-001", PartySide.PAYABLE, credit_terms_days=45)


@pytest_asyncio.fixture
async def rice_wallet(db, customer):
    wallet = CustomerWallet(
        party_id=customer.id,
        name="Rice Subsidy",
        balance=10_000,
        allowed_category_ids=[1, 2, 3],
        is_active=True,
    )
    db.add(wallet)
    await db.flush()
    return wallet


# Scenario dates used across modules
REFERENCE_DATE = date(2026, 6, 30)
