"""
Database Migration: Create Reconciliation Tables

Creates the bank reconciliation schema in PostgreSQL: bank accounts,
bank lines, ledger transactions, reconciliations and the audit log.
Enum columns are stored as VARCHAR with CHECK constraints, matching the
non-native enums declared on the ORM models.

Development and test databases are created by init_db() instead.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from database.connection import engine


SQL_STATEMENTS = [
    # Bank accounts
    """
    CREATE TABLE IF NOT EXISTS public.bank_accounts (
        id VARCHAR(36) PRIMARY KEY,
        owner_id VARCHAR(36) NOT NULL,
        account_name VARCHAR(255) NOT NULL,
        bank_name VARCHAR(255),
        currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Imported bank statement lines (amounts in minor units)
    """
    CREATE TABLE IF NOT EXISTS public.bank_lines (
        id VARCHAR(36) PRIMARY KEY,
        account_id VARCHAR(36) NOT NULL REFERENCES public.bank_accounts(id) ON DELETE CASCADE,

        date DATE NOT NULL,
        posting_date DATE,
        description TEXT NOT NULL DEFAULT '',
        reference VARCHAR(255),
        direction VARCHAR(6) NOT NULL,
        amount BIGINT NOT NULL,

        reconciliation_status VARCHAR(9) NOT NULL DEFAULT 'unmatched',
        inclusion VARCHAR(8) NOT NULL DEFAULT 'active',
        is_reconciled BOOLEAN NOT NULL DEFAULT false,
        notes TEXT,

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT bank_lines_amount_check CHECK (amount >= 0),
        CONSTRAINT bank_lines_direction_check CHECK (direction IN ('credit', 'debit')),
        CONSTRAINT bank_lines_status_check
            CHECK (reconciliation_status IN ('unmatched', 'partial', 'matched')),
        CONSTRAINT bank_lines_inclusion_check CHECK (inclusion IN ('active', 'excluded'))
    )
    """,

    # Ledger transactions
    """
    CREATE TABLE IF NOT EXISTS public.ledger_transactions (
        id VARCHAR(36) PRIMARY KEY,
        owner_id VARCHAR(36) NOT NULL,
        kind VARCHAR(8) NOT NULL,
        date DATE NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        reference VARCHAR(255),
        amount BIGINT NOT NULL,
        status VARCHAR(10) NOT NULL DEFAULT 'pending',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT ledger_transactions_amount_check CHECK (amount >= 0),
        CONSTRAINT ledger_transactions_kind_check
            CHECK (kind IN ('income', 'expense', 'transfer', 'journal')),
        CONSTRAINT ledger_transactions_status_check
            CHECK (status IN ('pending', 'cleared', 'reconciled', 'void'))
    )
    """,

    # Reconciliations (pending suggestions and confirmed matches)
    """
    CREATE TABLE IF NOT EXISTS public.reconciliations (
        id VARCHAR(36) PRIMARY KEY,
        bank_line_id VARCHAR(36) NOT NULL REFERENCES public.bank_lines(id) ON DELETE CASCADE,
        ledger_transaction_id VARCHAR(36) NOT NULL REFERENCES public.ledger_transactions(id) ON DELETE CASCADE,

        match_amount BIGINT NOT NULL,
        match_type VARCHAR(8) NOT NULL DEFAULT 'exact',
        match_confidence INTEGER,
        status VARCHAR(9) NOT NULL DEFAULT 'confirmed',
        ledger_prior_status VARCHAR(10),

        reconciled_at TIMESTAMPTZ,
        reconciled_by VARCHAR(36),
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT reconciliations_amount_check CHECK (match_amount >= 0),
        CONSTRAINT reconciliations_confidence_check
            CHECK (match_confidence IS NULL OR match_confidence BETWEEN 0 AND 100),
        CONSTRAINT reconciliations_match_type_check
            CHECK (match_type IN ('exact', 'partial', 'manual', 'split', 'combined')),
        CONSTRAINT reconciliations_status_check CHECK (status IN ('pending', 'confirmed'))
    )
    """,

    # Reconciliation audit log
    """
    CREATE TABLE IF NOT EXISTS public.reconciliation_audit_log (
        id VARCHAR(36) PRIMARY KEY,
        account_id VARCHAR(36),
        reconciliation_id VARCHAR(36),
        bank_line_id VARCHAR(36),
        ledger_transaction_id VARCHAR(36),
        action VARCHAR(30) NOT NULL,
        actor VARCHAR(36) NOT NULL DEFAULT 'system',
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Indexes
    "CREATE INDEX IF NOT EXISTS ix_bank_accounts_owner_id ON public.bank_accounts(owner_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_lines_account_date ON public.bank_lines(account_id, date)",
    "CREATE INDEX IF NOT EXISTS ix_bank_lines_account_status ON public.bank_lines(account_id, reconciliation_status)",
    "CREATE INDEX IF NOT EXISTS ix_ledger_owner_date ON public.ledger_transactions(owner_id, date)",
    "CREATE INDEX IF NOT EXISTS ix_ledger_owner_status ON public.ledger_transactions(owner_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliations_bank_line_id ON public.reconciliations(bank_line_id)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliations_ledger_transaction_id ON public.reconciliations(ledger_transaction_id)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliations_status_reconciled_at ON public.reconciliations(status, reconciled_at)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliation_audit_log_account_id ON public.reconciliation_audit_log(account_id)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliation_audit_log_bank_line_id ON public.reconciliation_audit_log(bank_line_id)",
    "CREATE INDEX IF NOT EXISTS ix_reconciliation_audit_log_timestamp ON public.reconciliation_audit_log(timestamp)",

    # A pair, and a ledger transaction, can be confirmed at most once
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_reconciliations_confirmed_pair
        ON public.reconciliations(bank_line_id, ledger_transaction_id)
        WHERE status = 'confirmed'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_reconciliations_confirmed_ledger
        ON public.reconciliations(ledger_transaction_id)
        WHERE status = 'confirmed'
    """,
]


async def create_tables():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    async with engine.begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            try:
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")
            except SQLAlchemyError as e:
                print(f"  ✗ Statement {i+1}/{len(SQL_STATEMENTS)} failed: {e}")
                raise

        print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
