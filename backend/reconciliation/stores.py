"""
Reconciliation Stores

Thin repositories over an AsyncSession. Every query is built with
SQLAlchemy expressions; none of these classes commit. Transaction
boundaries belong to the services.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankAccountDB,
    BankLineDB,
    LedgerTransactionDB,
    ReconciliationDB,
    ReconciliationAuditLogDB,
    BankLineStatus,
    Inclusion,
    LedgerStatus,
    ReconciliationStatus,
    AuditAction,
    Direction,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; either end may be open."""
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_valid(self) -> bool:
        return not (self.start and self.end and self.start > self.end)

    def apply(self, column):
        """Return the filter clauses for a date column."""
        clauses = []
        if self.start:
            clauses.append(column >= self.start)
        if self.end:
            clauses.append(column <= self.end)
        return clauses

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


class BankAccountStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, account_id: str) -> Optional[BankAccountDB]:
        return await self.db.get(BankAccountDB, account_id)

    async def list_active(self, owner_id: str) -> List[BankAccountDB]:
        result = await self.db.execute(
            select(BankAccountDB)
            .where(and_(BankAccountDB.owner_id == owner_id, BankAccountDB.is_active.is_(True)))
            .order_by(BankAccountDB.account_name, BankAccountDB.id)
        )
        return list(result.scalars().all())


class BankLineStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, bank_line_id: str, for_update: bool = False) -> Optional[BankLineDB]:
        """
        Load a bank line. With for_update the row is locked (SELECT ... FOR
        UPDATE on PostgreSQL, ignored by SQLite) until the transaction ends
        and its attributes are reloaded from the database.
        """
        if not for_update:
            return await self.db.get(BankLineDB, bank_line_id)
        return await self.db.get(
            BankLineDB, bank_line_id, with_for_update=True, populate_existing=True
        )

    async def list_for_account(
        self,
        account_id: str,
        statuses: Optional[Sequence[BankLineStatus]] = None,
        inclusion: Optional[Inclusion] = None,
        date_range: Optional[DateRange] = None,
        limit: Optional[int] = None,
    ) -> List[BankLineDB]:
        """Bank lines of an account ordered by date then id."""
        query = select(BankLineDB).where(BankLineDB.account_id == account_id)
        if statuses:
            query = query.where(BankLineDB.reconciliation_status.in_(list(statuses)))
        if inclusion is not None:
            query = query.where(BankLineDB.inclusion == inclusion)
        if date_range:
            query = query.where(*date_range.apply(BankLineDB.date))
        query = query.order_by(BankLineDB.date, BankLineDB.id)
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_status(self, bank_line: BankLineDB, status: BankLineStatus, is_reconciled: bool) -> BankLineDB:
        bank_line.reconciliation_status = status
        bank_line.is_reconciled = is_reconciled
        await self.db.flush()
        return bank_line

    async def set_inclusion(self, bank_line: BankLineDB, inclusion: Inclusion, notes: Optional[str] = None) -> BankLineDB:
        bank_line.inclusion = inclusion
        if notes is not None:
            bank_line.notes = notes
        await self.db.flush()
        return bank_line

    async def status_breakdown(self, account_id: str, date_range: Optional[DateRange] = None) -> List[Any]:
        """
        Count and amount per (direction, reconciliation_status, inclusion).
        The services fold these rows into summaries and balances.
        """
        query = (
            select(
                BankLineDB.direction,
                BankLineDB.reconciliation_status,
                BankLineDB.inclusion,
                func.count(BankLineDB.id).label("count"),
                func.coalesce(func.sum(BankLineDB.amount), 0).label("amount"),
            )
            .where(BankLineDB.account_id == account_id)
            .group_by(BankLineDB.direction, BankLineDB.reconciliation_status, BankLineDB.inclusion)
        )
        if date_range:
            query = query.where(*date_range.apply(BankLineDB.date))
        result = await self.db.execute(query)
        return list(result.all())

    async def list_unreconciled(self, account_id: str, date_range: Optional[DateRange] = None) -> List[Any]:
        """(date, direction, amount) of active lines not fully reconciled."""
        query = (
            select(BankLineDB.date, BankLineDB.direction, BankLineDB.amount)
            .where(and_(
                BankLineDB.account_id == account_id,
                BankLineDB.is_reconciled.is_(False),
                BankLineDB.inclusion == Inclusion.ACTIVE,
            ))
            .order_by(BankLineDB.date)
        )
        if date_range:
            query = query.where(*date_range.apply(BankLineDB.date))
        result = await self.db.execute(query)
        return list(result.all())

    async def last_reconciled_date(self, account_id: str) -> Optional[date]:
        result = await self.db.execute(
            select(func.max(BankLineDB.date)).where(and_(
                BankLineDB.account_id == account_id,
                BankLineDB.is_reconciled.is_(True),
            ))
        )
        return result.scalar()


class LedgerTransactionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, ledger_transaction_id: str) -> Optional[LedgerTransactionDB]:
        return await self.db.get(LedgerTransactionDB, ledger_transaction_id)

    async def list_candidates(
        self,
        owner_id: str,
        start: date,
        end: date,
        exclude_ids: Iterable[str] = (),
    ) -> List[LedgerTransactionDB]:
        """
        Ledger transactions of an owner inside [start, end] that are neither
        void, reconciled, nor claimed by a confirmed reconciliation.
        """
        claimed = select(ReconciliationDB.ledger_transaction_id).where(
            ReconciliationDB.status == ReconciliationStatus.CONFIRMED
        )
        query = (
            select(LedgerTransactionDB)
            .where(and_(
                LedgerTransactionDB.owner_id == owner_id,
                LedgerTransactionDB.date >= start,
                LedgerTransactionDB.date <= end,
                LedgerTransactionDB.status.not_in([LedgerStatus.VOID, LedgerStatus.RECONCILED]),
                LedgerTransactionDB.id.not_in(claimed),
            ))
            .order_by(LedgerTransactionDB.date, LedgerTransactionDB.id)
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.where(LedgerTransactionDB.id.not_in(exclude_ids))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_status(self, ledger_transaction: LedgerTransactionDB, status: LedgerStatus) -> LedgerTransactionDB:
        ledger_transaction.status = status
        await self.db.flush()
        return ledger_transaction


class ReconciliationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, reconciliation_id: str) -> Optional[ReconciliationDB]:
        return await self.db.get(ReconciliationDB, reconciliation_id)

    async def add(self, reconciliation: ReconciliationDB) -> ReconciliationDB:
        self.db.add(reconciliation)
        await self.db.flush()
        return reconciliation

    async def delete(self, reconciliation: ReconciliationDB) -> None:
        await self.db.delete(reconciliation)
        await self.db.flush()

    async def list_for_line(
        self,
        bank_line_id: str,
        status: Optional[ReconciliationStatus] = None,
    ) -> List[ReconciliationDB]:
        query = select(ReconciliationDB).where(ReconciliationDB.bank_line_id == bank_line_id)
        if status is not None:
            query = query.where(ReconciliationDB.status == status)
        query = query.order_by(ReconciliationDB.created_at, ReconciliationDB.id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def confirmed_total(self, bank_line_id: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(ReconciliationDB.match_amount), 0)).where(and_(
                ReconciliationDB.bank_line_id == bank_line_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
            ))
        )
        return int(result.scalar() or 0)

    async def find_confirmed_pair(self, bank_line_id: str, ledger_transaction_id: str) -> Optional[ReconciliationDB]:
        result = await self.db.execute(
            select(ReconciliationDB).where(and_(
                ReconciliationDB.bank_line_id == bank_line_id,
                ReconciliationDB.ledger_transaction_id == ledger_transaction_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
            ))
        )
        return result.scalars().first()

    async def find_pending_pair(self, bank_line_id: str, ledger_transaction_id: str) -> Optional[ReconciliationDB]:
        result = await self.db.execute(
            select(ReconciliationDB).where(and_(
                ReconciliationDB.bank_line_id == bank_line_id,
                ReconciliationDB.ledger_transaction_id == ledger_transaction_id,
                ReconciliationDB.status == ReconciliationStatus.PENDING,
            ))
        )
        return result.scalars().first()

    async def find_confirmed_for_ledger(self, ledger_transaction_id: str) -> Optional[ReconciliationDB]:
        result = await self.db.execute(
            select(ReconciliationDB).where(and_(
                ReconciliationDB.ledger_transaction_id == ledger_transaction_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
            ))
        )
        return result.scalars().first()

    async def count_pending(self, account_id: str, date_range: Optional[DateRange] = None) -> int:
        query = (
            select(func.count(ReconciliationDB.id))
            .join(BankLineDB, BankLineDB.id == ReconciliationDB.bank_line_id)
            .where(and_(
                BankLineDB.account_id == account_id,
                ReconciliationDB.status == ReconciliationStatus.PENDING,
            ))
        )
        if date_range:
            query = query.where(*date_range.apply(BankLineDB.date))
        result = await self.db.execute(query)
        return int(result.scalar() or 0)

    async def confirmed_totals_by_direction(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
    ) -> Dict[str, int]:
        """Sum of confirmed match amounts on credit and debit bank lines."""
        query = (
            select(
                func.coalesce(func.sum(case(
                    (BankLineDB.direction == Direction.CREDIT, ReconciliationDB.match_amount),
                    else_=0,
                )), 0).label("credits"),
                func.coalesce(func.sum(case(
                    (BankLineDB.direction == Direction.DEBIT, ReconciliationDB.match_amount),
                    else_=0,
                )), 0).label("debits"),
            )
            .select_from(ReconciliationDB)
            .join(BankLineDB, BankLineDB.id == ReconciliationDB.bank_line_id)
            .where(and_(
                BankLineDB.account_id == account_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
            ))
        )
        if date_range:
            query = query.where(*date_range.apply(BankLineDB.date))
        row = (await self.db.execute(query)).one()
        return {"credits": int(row.credits or 0), "debits": int(row.debits or 0)}

    async def latest_confirmed(self, account_id: str) -> Optional[ReconciliationDB]:
        result = await self.db.execute(
            select(ReconciliationDB)
            .join(BankLineDB, BankLineDB.id == ReconciliationDB.bank_line_id)
            .where(and_(
                BankLineDB.account_id == account_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
                ReconciliationDB.reconciled_at.is_not(None),
            ))
            .order_by(ReconciliationDB.reconciled_at.desc(), ReconciliationDB.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def count_confirmed_since(self, account_id: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(ReconciliationDB.id))
            .join(BankLineDB, BankLineDB.id == ReconciliationDB.bank_line_id)
            .where(and_(
                BankLineDB.account_id == account_id,
                ReconciliationDB.status == ReconciliationStatus.CONFIRMED,
                ReconciliationDB.reconciled_at >= since,
            ))
        )
        return int(result.scalar() or 0)


class AuditLogStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        action: AuditAction,
        actor: str,
        account_id: Optional[str] = None,
        reconciliation_id: Optional[str] = None,
        bank_line_id: Optional[str] = None,
        ledger_transaction_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationAuditLogDB:
        entry = ReconciliationAuditLogDB(
            action=action,
            actor=actor or "system",
            account_id=account_id,
            reconciliation_id=reconciliation_id,
            bank_line_id=bank_line_id,
            ledger_transaction_id=ledger_transaction_id,
            details=details or {},
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_for_account(self, account_id: str, limit: int = 100) -> List[ReconciliationAuditLogDB]:
        result = await self.db.execute(
            select(ReconciliationAuditLogDB)
            .where(ReconciliationAuditLogDB.account_id == account_id)
            .order_by(ReconciliationAuditLogDB.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
