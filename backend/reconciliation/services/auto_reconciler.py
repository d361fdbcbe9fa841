"""
Auto-Reconciliation Batch Runner

Walks the unreconciled bank lines of one account in date order and confirms
the best candidate for each line whose top score reaches the threshold.
A dry run performs the same selection without writing anything.

Ledger transactions chosen earlier in a run are excluded from later
candidate searches, so one run never assigns a ledger transaction twice.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    AuditAction,
    BankLineStatus,
    Inclusion,
)
from reconciliation.audit import (
    ReconciliationAuditEvent,
    log_reconciliation_event,
    record_audit,
)
from reconciliation.matching_rules.bank_rules import MatchingConfig
from reconciliation.results import (
    Err,
    Ok,
    ReconciliationErrorCode,
    Result,
    err,
    storage_failure,
)
from reconciliation.services.reconciliation_service import (
    CreateMatchOptions,
    ReconciliationService,
)
from reconciliation.stores import BankAccountStore, BankLineStore

logger = logging.getLogger(__name__)


@dataclass
class AutoReconcileOptions:
    min_confidence: Optional[int] = None  # Defaults to RECON_AUTO_MIN_CONFIDENCE
    dry_run: bool = False
    max_items: Optional[int] = None  # Defaults to RECON_AUTO_MAX_ITEMS


@dataclass
class AutoReconcileReport:
    """Result of an auto-reconciliation run."""
    run_id: str
    account_id: str
    dry_run: bool
    min_confidence: int
    processed_count: int = 0
    matched_count: int = 0
    matches: List[Dict[str, Any]] = field(default_factory=list)
    suggestions: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    unreconciled_remaining: int = 0
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "account_id": self.account_id,
            "dry_run": self.dry_run,
            "min_confidence": self.min_confidence,
            "processed_count": self.processed_count,
            "matched_count": self.matched_count,
            "matches": self.matches,
            "suggestions": self.suggestions,
            "skipped": self.skipped,
            "unreconciled_remaining": self.unreconciled_remaining,
            "truncated": self.truncated,
        }


class AutoReconciler:
    """
    Batch runner over ReconciliationService.

    Each confirmed match commits on its own, so a failure part way through
    keeps the matches already made and reports the rest as skipped.
    """

    def __init__(self, db: AsyncSession, config: Optional[MatchingConfig] = None):
        self.db = db
        self.settings = get_settings()
        self.service = ReconciliationService(db, config)
        self.accounts = BankAccountStore(db)
        self.bank_lines = BankLineStore(db)

    async def auto_reconcile(
        self,
        account_id: str,
        user_id: str,
        options: Optional[AutoReconcileOptions] = None,
    ) -> Result[AutoReconcileReport]:
        options = options or AutoReconcileOptions()
        min_confidence = options.min_confidence
        if min_confidence is None:
            min_confidence = self.settings.RECON_AUTO_MIN_CONFIDENCE
        max_items = options.max_items
        if max_items is None:
            max_items = self.settings.RECON_AUTO_MAX_ITEMS

        if not 0 <= min_confidence <= 100:
            return err(ReconciliationErrorCode.INVALID_INPUT, "min_confidence must be between 0 and 100")
        if max_items < 1:
            return err(ReconciliationErrorCode.INVALID_INPUT, "max_items must be at least 1")

        try:
            account = await self.accounts.get(account_id)
            if not account:
                return err(ReconciliationErrorCode.NOT_FOUND, f"Bank account {account_id} not found")
            if account.owner_id != user_id:
                return err(ReconciliationErrorCode.ACCESS_DENIED, "Bank account does not belong to this user")

            # Fetch one extra line to know whether the cap truncated the run
            lines = await self.bank_lines.list_for_account(
                account_id,
                statuses=[BankLineStatus.UNMATCHED, BankLineStatus.PARTIAL],
                inclusion=Inclusion.ACTIVE,
                limit=max_items + 1,
            )
            line_ids = [line.id for line in lines]
        except SQLAlchemyError:
            logger.exception(f"Auto-reconcile failed to load bank lines for account {account_id}")
            return storage_failure()

        report = AutoReconcileReport(
            run_id=str(uuid.uuid4()),
            account_id=account_id,
            dry_run=options.dry_run,
            min_confidence=min_confidence,
            truncated=len(line_ids) > max_items,
        )
        line_ids = line_ids[:max_items]

        log_reconciliation_event(
            ReconciliationAuditEvent.AUTO_RUN_STARTED,
            account_id,
            {"run_id": report.run_id, "lines": len(line_ids), "dry_run": options.dry_run,
             "min_confidence": min_confidence},
            actor=user_id,
        )

        reserved: Set[str] = set()
        for bank_line_id in line_ids:
            report.processed_count += 1
            await self._process_line(bank_line_id, user_id, min_confidence, options.dry_run, reserved, report)

        try:
            remaining = await self.bank_lines.list_for_account(
                account_id,
                statuses=[BankLineStatus.UNMATCHED, BankLineStatus.PARTIAL],
                inclusion=Inclusion.ACTIVE,
            )
            report.unreconciled_remaining = len(remaining)
            if options.dry_run:
                report.unreconciled_remaining -= len(report.suggestions)
            else:
                await record_audit(
                    self.db,
                    AuditAction.AUTO_RUN_COMPLETED,
                    actor=user_id,
                    account_id=account_id,
                    details={
                        "run_id": report.run_id,
                        "processed": report.processed_count,
                        "matched": report.matched_count,
                        "skipped": len(report.skipped),
                        "min_confidence": min_confidence,
                    },
                )
                await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Auto-reconcile failed to finalise run {report.run_id}")
            return storage_failure()

        logger.info(
            f"Auto-reconcile {report.run_id} for account {account_id}: "
            f"processed={report.processed_count} matched={report.matched_count} "
            f"suggested={len(report.suggestions)} skipped={len(report.skipped)}"
        )
        return Ok(report)

    async def _process_line(
        self,
        bank_line_id: str,
        user_id: str,
        min_confidence: int,
        dry_run: bool,
        reserved: Set[str],
        report: AutoReconcileReport,
    ) -> None:
        found = await self.service.find_potential_matches(
            bank_line_id,
            user_id=user_id,
            min_confidence=max(1, min_confidence),
            limit=1,
            exclude_ledger_ids=reserved,
        )
        if isinstance(found, Err):
            report.skipped.append(_skip(bank_line_id, found.error.message, found.code.value))
            return

        if not found.value.candidates:
            report.skipped.append(_skip(bank_line_id, f"No candidate scored {min_confidence} or more"))
            return

        best = found.value.candidates[0]
        if dry_run:
            reserved.add(best.ledger_transaction_id)
            report.suggestions.append({
                "bank_line_id": bank_line_id,
                "ledger_transaction_id": best.ledger_transaction_id,
                "score": best.score,
            })
            return

        created = await self.service.create_match(
            bank_line_id,
            best.ledger_transaction_id,
            user_id,
            CreateMatchOptions(
                confidence=best.score,
                notes=f"Auto-reconciled with {best.score}% confidence",
            ),
        )
        if isinstance(created, Err):
            report.skipped.append(_skip(bank_line_id, created.error.message, created.code.value))
            return

        reserved.add(best.ledger_transaction_id)
        report.matched_count += 1
        report.matches.append({
            "bank_line_id": bank_line_id,
            "ledger_transaction_id": best.ledger_transaction_id,
            "reconciliation_id": created.value.reconciliation["id"],
            "score": best.score,
        })


def _skip(bank_line_id: str, reason: str, code: Optional[str] = None) -> Dict[str, Any]:
    entry = {"bank_line_id": bank_line_id, "reason": reason}
    if code:
        entry["code"] = code
    return entry
