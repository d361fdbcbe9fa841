"""
Shared fixtures for the reconciliation test suite.

Each test gets a fresh in-memory SQLite database (aiosqlite) with all
tables created, plus a Seed helper for inserting accounts, bank lines
and ledger transactions.
"""

import os

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.connection import Base
from database.reconciliation_models import (
    BankAccountDB,
    BankLineDB,
    LedgerTransactionDB,
    Direction,
    LedgerKind,
    LedgerStatus,
)
from reconciliation.matching_rules.bank_rules import MatchingConfig

OWNER = "user-1"
OTHER_OWNER = "user-2"
BASE_DATE = date(2025, 3, 10)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def config():
    """Default matching configuration, independent of the environment."""
    return MatchingConfig()


class Seed:
    """Inserts and commits test records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def account(self, owner_id: str = OWNER, account_name: str = "Business Current", **kwargs) -> BankAccountDB:
        account = BankAccountDB(owner_id=owner_id, account_name=account_name, **kwargs)
        self.db.add(account)
        await self.db.commit()
        return account

    async def bank_line(
        self,
        account: BankAccountDB,
        amount: int,
        direction: Direction = Direction.CREDIT,
        on: date = BASE_DATE,
        description: str = "",
        reference: Optional[str] = None,
        **kwargs,
    ) -> BankLineDB:
        line = BankLineDB(
            account_id=account.id,
            amount=amount,
            direction=direction,
            date=on,
            description=description,
            reference=reference,
            **kwargs,
        )
        self.db.add(line)
        await self.db.commit()
        return line

    async def ledger(
        self,
        amount: int,
        kind: LedgerKind = LedgerKind.INCOME,
        on: date = BASE_DATE,
        description: str = "",
        reference: Optional[str] = None,
        owner_id: str = OWNER,
        status: LedgerStatus = LedgerStatus.CLEARED,
    ) -> LedgerTransactionDB:
        txn = LedgerTransactionDB(
            owner_id=owner_id,
            amount=amount,
            kind=kind,
            date=on,
            description=description,
            reference=reference,
            status=status,
        )
        self.db.add(txn)
        await self.db.commit()
        return txn


@pytest_asyncio.fixture
async def seed(db):
    return Seed(db)
