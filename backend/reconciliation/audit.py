"""
Reconciliation audit trail.

Every state change is written to reconciliation_audit_log inside the same
database transaction as the change, and mirrored to the application log.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import AuditAction
from reconciliation.stores import AuditLogStore

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Log-only event types (not persisted to the audit table)."""
    CANDIDATES_FOUND = "reconciliation.candidates_found"
    AUTO_RUN_STARTED = "reconciliation.auto_run_started"


def log_reconciliation_event(
    event_type: str,
    account_id: Optional[str],
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "account_id": account_id,
        "reconciliation_id": reconciliation_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


async def record_audit(
    db: AsyncSession,
    action: AuditAction,
    actor: str,
    account_id: Optional[str],
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    bank_line_id: Optional[str] = None,
    ledger_transaction_id: Optional[str] = None,
):
    """Persist an audit row (uncommitted) and emit the matching log event."""
    entry = await AuditLogStore(db).record(
        action=action,
        actor=actor,
        account_id=account_id,
        reconciliation_id=reconciliation_id,
        bank_line_id=bank_line_id,
        ledger_transaction_id=ledger_transaction_id,
        details=details,
    )
    log_reconciliation_event(
        f"reconciliation.{action.value}",
        account_id,
        details,
        reconciliation_id=reconciliation_id,
        actor=actor,
    )
    return entry
