"""
BankRec Core - Reconciliation Database Models

Bank statement lines, ledger transactions and the reconciliation links
between them. Amounts are stored as integer minor units (pence/cents).

Tables:
- bank_accounts: Accounts that own imported bank lines
- bank_lines: Imported bank statement line items
- ledger_transactions: Internally recorded bookkeeping transactions
- reconciliations: Links between a bank line and a ledger transaction
- reconciliation_audit_log: Immutable trail of reconciliation state changes
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, BigInteger, Integer,
    ForeignKey, Index, Enum as SQLEnum, JSON, text
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str) -> SQLEnum:
    # Persist the lowercase values, not the member names
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
    )


# ==================== ENUMS ====================

class Direction(str, PyEnum):
    """Money flow of a bank line"""
    CREDIT = "credit"  # Money in
    DEBIT = "debit"    # Money out


class BankLineStatus(str, PyEnum):
    """How much of a bank line is covered by confirmed reconciliations"""
    UNMATCHED = "unmatched"
    PARTIAL = "partial"
    MATCHED = "matched"


class Inclusion(str, PyEnum):
    """Whether a bank line takes part in reconciliation at all"""
    ACTIVE = "active"
    EXCLUDED = "excluded"


class LedgerKind(str, PyEnum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    JOURNAL = "journal"


class LedgerStatus(str, PyEnum):
    PENDING = "pending"
    CLEARED = "cleared"
    RECONCILED = "reconciled"
    VOID = "void"


class MatchType(str, PyEnum):
    EXACT = "exact"        # Amounts agree on both sides
    PARTIAL = "partial"    # Covers part of the bank line
    MANUAL = "manual"      # Forced by a user, no confidence
    SPLIT = "split"        # One of several ledger items funding a bank line
    COMBINED = "combined"  # Ledger item spread over several bank lines


class ReconciliationStatus(str, PyEnum):
    PENDING = "pending"      # Suggested, awaiting review
    CONFIRMED = "confirmed"  # Counts towards balances and status


class AuditAction(str, PyEnum):
    MATCH_CREATED = "match_created"
    MATCH_REMOVED = "match_removed"
    LINE_UNRECONCILED = "line_unreconciled"
    SUGGESTION_CREATED = "suggestion_created"
    SUGGESTION_CONFIRMED = "suggestion_confirmed"
    SUGGESTION_REJECTED = "suggestion_rejected"
    LINE_EXCLUDED = "line_excluded"
    LINE_INCLUDED = "line_included"
    AUTO_RUN_COMPLETED = "auto_run_completed"


# ==================== DATABASE MODELS ====================

class BankAccountDB(Base):
    """A bank account belonging to one user."""
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), nullable=False, index=True)
    account_name = Column(String(255), nullable=False)
    bank_name = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=False, default="GBP")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "account_name": self.account_name,
            "bank_name": self.bank_name,
            "currency": self.currency,
            "is_active": self.is_active,
        }


class BankLineDB(Base):
    """
    One imported bank statement line.

    reconciliation_status and is_reconciled are derived from the confirmed
    reconciliations and rewritten whenever those change.
    """
    __tablename__ = "bank_lines"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False)

    date = Column(Date, nullable=False)
    posting_date = Column(Date, nullable=True)
    description = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)
    direction = Column(_enum_column(Direction, "direction_enum"), nullable=False)
    amount = Column(BigInteger, nullable=False)

    reconciliation_status = Column(
        _enum_column(BankLineStatus, "bank_line_status_enum"),
        nullable=False,
        default=BankLineStatus.UNMATCHED
    )
    inclusion = Column(
        _enum_column(Inclusion, "inclusion_enum"),
        nullable=False,
        default=Inclusion.ACTIVE
    )
    is_reconciled = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_bank_lines_account_date', 'account_id', 'date'),
        Index('ix_bank_lines_account_status', 'account_id', 'reconciliation_status'),
    )

    @property
    def effective_status(self) -> str:
        if self.inclusion == Inclusion.EXCLUDED:
            return Inclusion.EXCLUDED.value
        return BankLineStatus(self.reconciliation_status).value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "date": self.date.isoformat() if self.date else None,
            "posting_date": self.posting_date.isoformat() if self.posting_date else None,
            "description": self.description,
            "reference": self.reference,
            "direction": Direction(self.direction).value,
            "amount": self.amount,
            "reconciliation_status": BankLineStatus(self.reconciliation_status).value,
            "inclusion": Inclusion(self.inclusion).value,
            "effective_status": self.effective_status,
            "is_reconciled": self.is_reconciled,
            "notes": self.notes,
        }


class LedgerTransactionDB(Base):
    """A bookkeeping transaction recorded inside the application."""
    __tablename__ = "ledger_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), nullable=False)

    kind = Column(_enum_column(LedgerKind, "ledger_kind_enum"), nullable=False)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(
        _enum_column(LedgerStatus, "ledger_status_enum"),
        nullable=False,
        default=LedgerStatus.PENDING
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_ledger_owner_date', 'owner_id', 'date'),
        Index('ix_ledger_owner_status', 'owner_id', 'status'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": LedgerKind(self.kind).value,
            "date": self.date.isoformat() if self.date else None,
            "description": self.description,
            "reference": self.reference,
            "amount": self.amount,
            "status": LedgerStatus(self.status).value,
        }


class ReconciliationDB(Base):
    """
    Link between a bank line and a ledger transaction.

    Uniqueness of confirmed links is enforced by partial unique indexes so
    that concurrent confirmations cannot both succeed.
    """
    __tablename__ = "reconciliations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_line_id = Column(String(36), ForeignKey("bank_lines.id", ondelete="CASCADE"), nullable=False, index=True)
    ledger_transaction_id = Column(
        String(36), ForeignKey("ledger_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    match_amount = Column(BigInteger, nullable=False)
    match_type = Column(_enum_column(MatchType, "match_type_enum"), nullable=False, default=MatchType.EXACT)
    match_confidence = Column(Integer, nullable=True)
    status = Column(
        _enum_column(ReconciliationStatus, "reconciliation_status_enum"),
        nullable=False,
        default=ReconciliationStatus.CONFIRMED
    )
    ledger_prior_status = Column(_enum_column(LedgerStatus, "ledger_status_enum"), nullable=True)

    reconciled_at = Column(DateTime(timezone=True), nullable=True)
    reconciled_by = Column(String(36), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index(
            'uq_reconciliations_confirmed_pair',
            'bank_line_id', 'ledger_transaction_id',
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
        Index(
            'uq_reconciliations_confirmed_ledger',
            'ledger_transaction_id',
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
        Index('ix_reconciliations_status_reconciled_at', 'status', 'reconciled_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bank_line_id": self.bank_line_id,
            "ledger_transaction_id": self.ledger_transaction_id,
            "match_amount": self.match_amount,
            "match_type": MatchType(self.match_type).value,
            "match_confidence": self.match_confidence,
            "status": ReconciliationStatus(self.status).value,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
            "reconciled_by": self.reconciled_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ReconciliationAuditLogDB(Base):
    """
    Immutable audit trail of reconciliation changes.
    Rows are written in the same transaction as the change they describe.
    """
    __tablename__ = "reconciliation_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(36), nullable=True, index=True)
    reconciliation_id = Column(String(36), nullable=True)
    bank_line_id = Column(String(36), nullable=True, index=True)
    ledger_transaction_id = Column(String(36), nullable=True)
    action = Column(_enum_column(AuditAction, "reconciliation_audit_action_enum"), nullable=False)
    actor = Column(String(36), nullable=False, default="system")
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "reconciliation_id": self.reconciliation_id,
            "bank_line_id": self.bank_line_id,
            "ledger_transaction_id": self.ledger_transaction_id,
            "action": AuditAction(self.action).value,
            "actor": self.actor,
            "details": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
