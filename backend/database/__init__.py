from .connection import get_db, engine, AsyncSessionLocal, init_db, Base, build_engine

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankAccountDB, BankLineDB, LedgerTransactionDB, ReconciliationDB, ReconciliationAuditLogDB,
    Direction, BankLineStatus, Inclusion, LedgerKind, LedgerStatus, MatchType,
    ReconciliationStatus, AuditAction, generate_uuid, utc_now
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base', 'build_engine',
    # Reconciliation models
    'BankAccountDB', 'BankLineDB', 'LedgerTransactionDB', 'ReconciliationDB',
    'ReconciliationAuditLogDB',
    # Enums
    'Direction', 'BankLineStatus', 'Inclusion', 'LedgerKind', 'LedgerStatus',
    'MatchType', 'ReconciliationStatus', 'AuditAction',
    'generate_uuid', 'utc_now',
]
