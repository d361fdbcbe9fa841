"""
Reconciliation Service

Core business logic for matching bank lines to ledger transactions:
- Finding and ranking match candidates
- Validating a proposed match
- Confirming and reversing matches
- Pending suggestions (suggest / confirm / reject)
- Excluding bank lines from reconciliation
- Audit logging

Every mutating operation runs as a single database transaction. Confirmed
links are additionally protected by partial unique indexes, which act as
the backstop when two requests race past the application checks.
Write paths load the bank line with SELECT ... FOR UPDATE, so concurrent
splits on one line are serialised and the sum of confirmed amounts is
read under the lock; the unique indexes cannot cover that sum.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankAccountDB,
    BankLineDB,
    LedgerTransactionDB,
    ReconciliationDB,
    BankLineStatus,
    Inclusion,
    LedgerStatus,
    Direction,
    LedgerKind,
    MatchType,
    ReconciliationStatus,
    AuditAction,
    utc_now,
)
from reconciliation.audit import (
    ReconciliationAuditEvent,
    log_reconciliation_event,
    record_audit,
)
from reconciliation.matching_rules.bank_rules import (
    BankMatchingRules,
    MatchCandidate,
    MatchingConfig,
    are_types_compatible,
)
from reconciliation.results import (
    Err,
    MatchValidation,
    Ok,
    ReconciliationErrorCode,
    Result,
    ValidationIssue,
    err,
    storage_failure,
)
from reconciliation.stores import (
    BankAccountStore,
    BankLineStore,
    LedgerTransactionStore,
    ReconciliationStore,
)

logger = logging.getLogger(__name__)


@dataclass
class CreateMatchOptions:
    """Optional parameters for create_match."""
    match_amount: Optional[int] = None
    match_type: Optional[MatchType] = None
    notes: Optional[str] = None
    confidence: Optional[int] = None
    force: bool = False  # Manual match: no confidence, type MANUAL


@dataclass
class CandidateList:
    """Ranked candidates for one bank line."""
    bank_line: Dict[str, Any]
    candidates: List[MatchCandidate]
    window_days: int
    widened: bool = False
    remaining_amount: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_line": self.bank_line,
            "candidates_count": len(self.candidates),
            "candidates": [c.to_dict() for c in self.candidates],
            "window_days": self.window_days,
            "widened": self.widened,
            "remaining_amount": self.remaining_amount,
        }


@dataclass
class MatchOutcome:
    """Result of a successful confirmation."""
    reconciliation: Dict[str, Any]
    bank_line: Dict[str, Any]
    ledger_transaction: Dict[str, Any]
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reconciliation": self.reconciliation,
            "bank_line": self.bank_line,
            "ledger_transaction": self.ledger_transaction,
            "warnings": self.warnings,
        }


class ReconciliationService:
    """
    Service for reconciling bank lines against ledger transactions.

    Domain failures are returned as Err values. Storage errors are logged
    in full and surfaced as a generic STORAGE_FAILURE.
    """

    def __init__(self, db: AsyncSession, config: Optional[MatchingConfig] = None):
        self.db = db
        self.config = config or MatchingConfig.from_settings(get_settings())
        self.rules = BankMatchingRules(self.config)
        self.accounts = BankAccountStore(db)
        self.bank_lines = BankLineStore(db)
        self.ledger = LedgerTransactionStore(db)
        self.reconciliations = ReconciliationStore(db)

    # ==================== CANDIDATES ====================

    async def find_potential_matches(
        self,
        bank_line_id: str,
        user_id: Optional[str] = None,
        min_confidence: int = 1,
        limit: Optional[int] = None,
        exclude_ledger_ids: Iterable[str] = (),
    ) -> Result[CandidateList]:
        """
        Rank unreconciled ledger transactions for a bank line.

        Searches +/- candidate_window_days around the line date and widens
        once to widened_window_days when fewer than min_candidates are found.
        Score-0 (incompatible) candidates are never returned.
        """
        if not 0 <= min_confidence <= 100:
            return err(ReconciliationErrorCode.INVALID_INPUT, "min_confidence must be between 0 and 100")
        if limit is not None and limit < 1:
            return err(ReconciliationErrorCode.INVALID_INPUT, "limit must be a positive integer")

        try:
            loaded = await self._load_line(bank_line_id, user_id)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded

            if line.inclusion == Inclusion.EXCLUDED:
                return err(
                    ReconciliationErrorCode.ALREADY_RECONCILED,
                    "Bank line is excluded from reconciliation",
                    bank_line_id=bank_line_id,
                )
            if line.is_reconciled or line.reconciliation_status == BankLineStatus.MATCHED:
                return err(
                    ReconciliationErrorCode.ALREADY_RECONCILED,
                    "Bank line is already reconciled",
                    bank_line_id=bank_line_id,
                )

            ledger_txns, window, widened = await self._search_window(
                line, account.owner_id, exclude_ledger_ids
            )
            remaining = line.amount - await self.reconciliations.confirmed_total(line.id)
        except SQLAlchemyError:
            logger.exception(f"Candidate search failed for bank line {bank_line_id}")
            return storage_failure()

        candidates = self.rules.rank(
            line, ledger_txns, min_score=min_confidence, remaining_amount=remaining
        )
        if limit is not None:
            candidates = candidates[:limit]

        log_reconciliation_event(
            ReconciliationAuditEvent.CANDIDATES_FOUND,
            line.account_id,
            {
                "bank_line_id": bank_line_id,
                "searched": len(ledger_txns),
                "candidates": len(candidates),
                "window_days": window,
            },
            actor=user_id or "system",
        )

        return Ok(CandidateList(
            bank_line=line.to_dict(),
            candidates=candidates,
            window_days=window,
            widened=widened,
            remaining_amount=remaining,
        ))

    async def _search_window(
        self,
        line: BankLineDB,
        owner_id: str,
        exclude_ids: Iterable[str],
    ) -> Tuple[List[LedgerTransactionDB], int, bool]:
        exclude_ids = list(exclude_ids)
        window = self.config.candidate_window_days
        txns = await self.ledger.list_candidates(
            owner_id,
            line.date - timedelta(days=window),
            line.date + timedelta(days=window),
            exclude_ids,
        )

        widened_window = self.config.widened_window_days
        if len(txns) < self.config.min_candidates and widened_window > window:
            txns = await self.ledger.list_candidates(
                owner_id,
                line.date - timedelta(days=widened_window),
                line.date + timedelta(days=widened_window),
                exclude_ids,
            )
            return txns, widened_window, True

        return txns, window, False

    # ==================== VALIDATION ====================

    async def validate_match(
        self,
        bank_line_id: str,
        ledger_transaction_id: str,
        user_id: Optional[str] = None,
    ) -> Result[MatchValidation]:
        """
        Check whether a bank line and ledger transaction may be matched.

        Amount differences are reported as warnings; they do not make the
        match invalid.
        """
        try:
            line = await self.bank_lines.get(bank_line_id)
            ledger_txn = await self.ledger.get(ledger_transaction_id)

            validation = MatchValidation()
            if not line:
                validation.errors.append(ValidationIssue(
                    ReconciliationErrorCode.NOT_FOUND, f"Bank line {bank_line_id} not found"
                ))
            if not ledger_txn:
                validation.errors.append(ValidationIssue(
                    ReconciliationErrorCode.NOT_FOUND, f"Ledger transaction {ledger_transaction_id} not found"
                ))
            if validation.errors:
                return Ok(validation)

            if user_id is not None:
                account = await self.accounts.get(line.account_id)
                if not account or account.owner_id != user_id or ledger_txn.owner_id != user_id:
                    validation.errors.append(ValidationIssue(
                        ReconciliationErrorCode.ACCESS_DENIED, "Records do not belong to this user"
                    ))
                    return Ok(validation)

            await self._collect_issues(line, ledger_txn, validation)
        except SQLAlchemyError:
            logger.exception(f"Match validation failed for {bank_line_id}/{ledger_transaction_id}")
            return storage_failure()

        return Ok(validation)

    async def _collect_issues(
        self,
        line: BankLineDB,
        ledger_txn: LedgerTransactionDB,
        validation: MatchValidation,
    ) -> MatchValidation:
        if line.inclusion == Inclusion.EXCLUDED:
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.ALREADY_RECONCILED, "Bank line is excluded from reconciliation"
            ))

        if ledger_txn.status == LedgerStatus.VOID:
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.INVALID_INPUT, "Ledger transaction is void"
            ))

        if not are_types_compatible(line.direction, ledger_txn.kind):
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.INCOMPATIBLE_TYPES,
                f"A {Direction(line.direction).value} bank line cannot match a {LedgerKind(ledger_txn.kind).value} transaction",
            ))

        if await self.reconciliations.find_confirmed_pair(line.id, ledger_txn.id):
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.ALREADY_RECONCILED, "This pair is already reconciled"
            ))
        elif await self.reconciliations.find_confirmed_for_ledger(ledger_txn.id):
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.ALREADY_RECONCILED,
                "Ledger transaction is already reconciled to another bank line",
            ))

        if line.is_reconciled or line.reconciliation_status == BankLineStatus.MATCHED:
            validation.errors.append(ValidationIssue(
                ReconciliationErrorCode.ALREADY_RECONCILED, "Bank line is already fully reconciled"
            ))

        if line.amount != ledger_txn.amount:
            validation.warnings.append(ValidationIssue(
                ReconciliationErrorCode.AMOUNT_MISMATCH,
                f"Amounts differ: bank {line.amount}, ledger {ledger_txn.amount}",
            ))

        return validation

    # ==================== CONFIRM ====================

    async def create_match(
        self,
        bank_line_id: str,
        ledger_transaction_id: str,
        user_id: str,
        options: Optional[CreateMatchOptions] = None,
    ) -> Result[MatchOutcome]:
        """
        Confirm a match between a bank line and a ledger transaction.

        Writes the reconciliation, the bank line status, the ledger status
        and an audit row in one transaction.
        """
        options = options or CreateMatchOptions()
        try:
            loaded = await self._load_pair(bank_line_id, ledger_transaction_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account, ledger_txn = loaded

            return await self._confirm(line, account, ledger_txn, user_id, options)
        except IntegrityError:
            return await self._resolve_conflict(bank_line_id, ledger_transaction_id)
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to create match {bank_line_id}/{ledger_transaction_id}")
            return storage_failure()

    async def _confirm(
        self,
        line: BankLineDB,
        account: BankAccountDB,
        ledger_txn: LedgerTransactionDB,
        user_id: str,
        options: CreateMatchOptions,
        pending: Optional[ReconciliationDB] = None,
    ) -> Result[MatchOutcome]:
        validation = await self._collect_issues(line, ledger_txn, MatchValidation())
        if not validation.valid:
            issue = validation.first_error()
            return err(
                issue.code,
                issue.message,
                bank_line_id=line.id,
                ledger_transaction_id=ledger_txn.id,
            )

        confirmed_total = await self.reconciliations.confirmed_total(line.id)
        remaining = line.amount - confirmed_total

        amount = options.match_amount
        if amount is None:
            amount = min(remaining, ledger_txn.amount)
        if amount < 0 or (amount == 0 and line.amount != 0):
            return err(ReconciliationErrorCode.INVALID_INPUT, "match_amount must be positive")
        if amount > remaining:
            return err(
                ReconciliationErrorCode.INVALID_INPUT,
                f"match_amount {amount} exceeds the bank line's unreconciled amount {remaining}",
                remaining=remaining,
            )
        if amount > ledger_txn.amount:
            return err(
                ReconciliationErrorCode.INVALID_INPUT,
                f"match_amount {amount} exceeds the ledger transaction amount {ledger_txn.amount}",
            )

        if options.force:
            confidence = None
            match_type = MatchType.MANUAL
        else:
            confidence = options.confidence
            if confidence is None:
                confidence = self.rules.score(line, ledger_txn, remaining_amount=remaining).score
            match_type = options.match_type or self._derive_match_type(
                line, ledger_txn, amount, has_splits=confirmed_total > 0
            )

        prior_status = LedgerStatus(ledger_txn.status)
        now = utc_now()

        if pending is not None:
            reconciliation = pending
            reconciliation.status = ReconciliationStatus.CONFIRMED
            reconciliation.match_amount = amount
            reconciliation.match_type = match_type
            reconciliation.match_confidence = confidence
            reconciliation.ledger_prior_status = prior_status
            reconciliation.reconciled_at = now
            reconciliation.reconciled_by = user_id
            if options.notes is not None:
                reconciliation.notes = options.notes
            await self.db.flush()
        else:
            reconciliation = await self.reconciliations.add(ReconciliationDB(
                bank_line_id=line.id,
                ledger_transaction_id=ledger_txn.id,
                match_amount=amount,
                match_type=match_type,
                match_confidence=confidence,
                status=ReconciliationStatus.CONFIRMED,
                ledger_prior_status=prior_status,
                reconciled_at=now,
                reconciled_by=user_id,
                notes=options.notes,
            ))

        await self._refresh_line_status(line)
        await self.ledger.update_status(ledger_txn, LedgerStatus.RECONCILED)

        await record_audit(
            self.db,
            AuditAction.SUGGESTION_CONFIRMED if pending is not None else AuditAction.MATCH_CREATED,
            actor=user_id,
            account_id=account.id,
            reconciliation_id=reconciliation.id,
            bank_line_id=line.id,
            ledger_transaction_id=ledger_txn.id,
            details={
                "match_amount": amount,
                "match_type": match_type.value,
                "confidence": confidence,
                "bank_line_status": BankLineStatus(line.reconciliation_status).value,
            },
        )

        await self.db.commit()

        return Ok(MatchOutcome(
            reconciliation=reconciliation.to_dict(),
            bank_line=line.to_dict(),
            ledger_transaction=ledger_txn.to_dict(),
            warnings=[w.to_dict() for w in validation.warnings],
        ))

    async def _resolve_conflict(self, bank_line_id: str, ledger_transaction_id: str) -> Err:
        """A unique index rejected the insert: report what the database now holds."""
        await self.db.rollback()
        logger.warning(
            f"Unique constraint rejected match {bank_line_id}/{ledger_transaction_id}; re-checking"
        )
        try:
            existing = await self.reconciliations.find_confirmed_pair(bank_line_id, ledger_transaction_id)
        except SQLAlchemyError:
            logger.exception("Conflict re-check failed")
            return storage_failure()

        if existing:
            return err(
                ReconciliationErrorCode.ALREADY_RECONCILED,
                "This pair is already reconciled",
                reconciliation_id=existing.id,
            )
        return err(
            ReconciliationErrorCode.CONCURRENCY_CONFLICT,
            "The records changed while the match was being saved; retry",
            bank_line_id=bank_line_id,
            ledger_transaction_id=ledger_transaction_id,
        )

    @staticmethod
    def _derive_match_type(
        line: BankLineDB,
        ledger_txn: LedgerTransactionDB,
        amount: int,
        has_splits: bool,
    ) -> MatchType:
        if has_splits:
            return MatchType.SPLIT
        if amount == line.amount == ledger_txn.amount:
            return MatchType.EXACT
        return MatchType.PARTIAL

    # ==================== REVERSE ====================

    async def remove_match(self, reconciliation_id: str, user_id: str) -> Result[Dict[str, Any]]:
        """
        Delete one reconciliation, recompute the bank line status and restore
        the ledger transaction's prior status when nothing else claims it.
        """
        try:
            reconciliation = await self.reconciliations.get(reconciliation_id)
            if not reconciliation:
                return err(ReconciliationErrorCode.NOT_FOUND, f"Reconciliation {reconciliation_id} not found")

            loaded = await self._load_line(reconciliation.bank_line_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded
            ledger_txn = await self.ledger.get(reconciliation.ledger_transaction_id)

            details = {
                "match_amount": reconciliation.match_amount,
                "status": ReconciliationStatus(reconciliation.status).value,
            }
            was_confirmed = reconciliation.status == ReconciliationStatus.CONFIRMED
            prior_status = reconciliation.ledger_prior_status

            await self.reconciliations.delete(reconciliation)
            await self._refresh_line_status(line)
            if ledger_txn is not None and was_confirmed:
                await self._release_ledger(ledger_txn, prior_status)

            await record_audit(
                self.db,
                AuditAction.MATCH_REMOVED,
                actor=user_id,
                account_id=account.id,
                reconciliation_id=reconciliation_id,
                bank_line_id=line.id,
                ledger_transaction_id=ledger_txn.id if ledger_txn else None,
                details=details,
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to remove reconciliation {reconciliation_id}")
            return storage_failure()

        return Ok({
            "reconciliation_id": reconciliation_id,
            "bank_line": line.to_dict(),
            "ledger_transaction": ledger_txn.to_dict() if ledger_txn else None,
        })

    async def unreconcile_bank_line(self, bank_line_id: str, user_id: str) -> Result[Dict[str, Any]]:
        """Remove every reconciliation of a bank line in one transaction."""
        try:
            loaded = await self._load_line(bank_line_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded

            rows = await self.reconciliations.list_for_line(bank_line_id)
            released = []
            for row in rows:
                was_confirmed = row.status == ReconciliationStatus.CONFIRMED
                prior_status = row.ledger_prior_status
                ledger_id = row.ledger_transaction_id
                await self.reconciliations.delete(row)
                if was_confirmed:
                    ledger_txn = await self.ledger.get(ledger_id)
                    if ledger_txn is not None:
                        await self._release_ledger(ledger_txn, prior_status)
                        released.append(ledger_id)

            await self._refresh_line_status(line)
            await record_audit(
                self.db,
                AuditAction.LINE_UNRECONCILED,
                actor=user_id,
                account_id=account.id,
                bank_line_id=bank_line_id,
                details={"removed_count": len(rows), "released_ledger_ids": released},
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to unreconcile bank line {bank_line_id}")
            return storage_failure()

        return Ok({"removed_count": len(rows), "bank_line": line.to_dict()})

    # ==================== SUGGESTIONS ====================

    async def suggest_match(
        self,
        bank_line_id: str,
        ledger_transaction_id: str,
        user_id: str = "system",
        confidence: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """
        Store a pending reconciliation for later review. Pending rows do
        not change bank line or ledger status.
        """
        try:
            loaded = await self._load_pair(bank_line_id, ledger_transaction_id, None)
            if isinstance(loaded, Err):
                return loaded
            line, account, ledger_txn = loaded

            validation = await self._collect_issues(line, ledger_txn, MatchValidation())
            if not validation.valid:
                issue = validation.first_error()
                return err(issue.code, issue.message)

            existing = await self.reconciliations.find_pending_pair(bank_line_id, ledger_transaction_id)
            if existing:
                return Ok(existing.to_dict())

            remaining = line.amount - await self.reconciliations.confirmed_total(line.id)
            if confidence is None:
                confidence = self.rules.score(line, ledger_txn, remaining_amount=remaining).score

            suggestion = await self.reconciliations.add(ReconciliationDB(
                bank_line_id=line.id,
                ledger_transaction_id=ledger_txn.id,
                match_amount=min(remaining, ledger_txn.amount),
                match_type=MatchType.EXACT if line.amount == ledger_txn.amount else MatchType.PARTIAL,
                match_confidence=confidence,
                status=ReconciliationStatus.PENDING,
                notes=notes,
            ))
            await record_audit(
                self.db,
                AuditAction.SUGGESTION_CREATED,
                actor=user_id,
                account_id=account.id,
                reconciliation_id=suggestion.id,
                bank_line_id=line.id,
                ledger_transaction_id=ledger_txn.id,
                details={"confidence": confidence},
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to store suggestion {bank_line_id}/{ledger_transaction_id}")
            return storage_failure()

        return Ok(suggestion.to_dict())

    async def confirm_suggestion(self, reconciliation_id: str, user_id: str) -> Result[MatchOutcome]:
        """Promote a pending suggestion through the same checks as create_match."""
        bank_line_id = ledger_transaction_id = None
        try:
            suggestion = await self.reconciliations.get(reconciliation_id)
            if not suggestion:
                return err(ReconciliationErrorCode.NOT_FOUND, f"Suggestion {reconciliation_id} not found")
            if suggestion.status != ReconciliationStatus.PENDING:
                return err(ReconciliationErrorCode.ALREADY_RECONCILED, "Suggestion is already confirmed")

            bank_line_id = suggestion.bank_line_id
            ledger_transaction_id = suggestion.ledger_transaction_id
            loaded = await self._load_pair(bank_line_id, ledger_transaction_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account, ledger_txn = loaded

            options = CreateMatchOptions(
                match_amount=suggestion.match_amount,
                match_type=MatchType(suggestion.match_type),
                confidence=suggestion.match_confidence,
            )
            return await self._confirm(line, account, ledger_txn, user_id, options, pending=suggestion)
        except IntegrityError:
            return await self._resolve_conflict(bank_line_id, ledger_transaction_id)
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to confirm suggestion {reconciliation_id}")
            return storage_failure()

    async def reject_suggestion(
        self,
        reconciliation_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """Delete a pending suggestion, keeping the reason in the audit log."""
        try:
            suggestion = await self.reconciliations.get(reconciliation_id)
            if not suggestion:
                return err(ReconciliationErrorCode.NOT_FOUND, f"Suggestion {reconciliation_id} not found")
            if suggestion.status != ReconciliationStatus.PENDING:
                return err(
                    ReconciliationErrorCode.INVALID_INPUT,
                    "Only pending suggestions can be rejected; use remove_match for confirmed matches",
                )

            loaded = await self._load_line(suggestion.bank_line_id, user_id)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded
            ledger_transaction_id = suggestion.ledger_transaction_id

            await self.reconciliations.delete(suggestion)
            await record_audit(
                self.db,
                AuditAction.SUGGESTION_REJECTED,
                actor=user_id,
                account_id=account.id,
                reconciliation_id=reconciliation_id,
                bank_line_id=line.id,
                ledger_transaction_id=ledger_transaction_id,
                details={"reason": reason},
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to reject suggestion {reconciliation_id}")
            return storage_failure()

        return Ok({"reconciliation_id": reconciliation_id, "rejected": True, "reason": reason})

    # ==================== EXCLUSION ====================

    async def exclude_bank_line(
        self,
        bank_line_id: str,
        user_id: str,
        notes: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """
        Take a bank line out of reconciliation. Lines with confirmed
        matches must be unreconciled first; pending suggestions are dropped.
        """
        try:
            loaded = await self._load_line(bank_line_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded

            rows = await self.reconciliations.list_for_line(bank_line_id)
            if any(r.status == ReconciliationStatus.CONFIRMED for r in rows):
                return err(
                    ReconciliationErrorCode.ALREADY_RECONCILED,
                    "Bank line has confirmed matches; unreconcile it before excluding",
                )

            for row in rows:
                await self.reconciliations.delete(row)
            await self.bank_lines.set_inclusion(line, Inclusion.EXCLUDED, notes)
            await record_audit(
                self.db,
                AuditAction.LINE_EXCLUDED,
                actor=user_id,
                account_id=account.id,
                bank_line_id=bank_line_id,
                details={"notes": notes, "dropped_suggestions": len(rows)},
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to exclude bank line {bank_line_id}")
            return storage_failure()

        return Ok(line.to_dict())

    async def include_bank_line(
        self,
        bank_line_id: str,
        user_id: str,
        notes: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """Return an excluded bank line to reconciliation."""
        try:
            loaded = await self._load_line(bank_line_id, user_id, lock=True)
            if isinstance(loaded, Err):
                return loaded
            line, account = loaded

            await self.bank_lines.set_inclusion(line, Inclusion.ACTIVE, notes)
            await record_audit(
                self.db,
                AuditAction.LINE_INCLUDED,
                actor=user_id,
                account_id=account.id,
                bank_line_id=bank_line_id,
                details={"notes": notes},
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Failed to include bank line {bank_line_id}")
            return storage_failure()

        return Ok(line.to_dict())

    async def list_reconciliations(
        self,
        bank_line_id: str,
        user_id: Optional[str] = None,
    ) -> Result[List[Dict[str, Any]]]:
        try:
            loaded = await self._load_line(bank_line_id, user_id)
            if isinstance(loaded, Err):
                return loaded
            rows = await self.reconciliations.list_for_line(bank_line_id)
        except SQLAlchemyError:
            logger.exception(f"Failed to list reconciliations for {bank_line_id}")
            return storage_failure()

        return Ok([r.to_dict() for r in rows])

    # ==================== HELPERS ====================

    async def _load_line(
        self,
        bank_line_id: str,
        user_id: Optional[str],
        lock: bool = False,
    ) -> Union[Tuple[BankLineDB, BankAccountDB], Err]:
        line = await self.bank_lines.get(bank_line_id, for_update=lock)
        if not line:
            return err(ReconciliationErrorCode.NOT_FOUND, f"Bank line {bank_line_id} not found")

        account = await self.accounts.get(line.account_id)
        if not account:
            return err(ReconciliationErrorCode.NOT_FOUND, f"Bank account {line.account_id} not found")

        if user_id is not None and account.owner_id != user_id:
            logger.warning(f"User {user_id} denied access to bank line {bank_line_id}")
            return err(ReconciliationErrorCode.ACCESS_DENIED, "Bank line does not belong to this user")

        return line, account

    async def _load_pair(
        self,
        bank_line_id: str,
        ledger_transaction_id: str,
        user_id: Optional[str],
        lock: bool = False,
    ):
        loaded = await self._load_line(bank_line_id, user_id, lock=lock)
        if isinstance(loaded, Err):
            return loaded
        line, account = loaded

        ledger_txn = await self.ledger.get(ledger_transaction_id)
        if not ledger_txn:
            return err(
                ReconciliationErrorCode.NOT_FOUND,
                f"Ledger transaction {ledger_transaction_id} not found",
            )
        if ledger_txn.owner_id != account.owner_id:
            return err(
                ReconciliationErrorCode.ACCESS_DENIED,
                "Ledger transaction and bank line belong to different users",
            )

        return line, account, ledger_txn

    async def _refresh_line_status(self, line: BankLineDB) -> BankLineDB:
        """Derive the bank line status from its confirmed reconciliations."""
        confirmed = await self.reconciliations.list_for_line(line.id, ReconciliationStatus.CONFIRMED)
        total = sum(r.match_amount for r in confirmed)

        if not confirmed:
            status = BankLineStatus.UNMATCHED
        elif total >= line.amount:
            status = BankLineStatus.MATCHED
        else:
            status = BankLineStatus.PARTIAL

        return await self.bank_lines.update_status(line, status, status == BankLineStatus.MATCHED)

    async def _release_ledger(
        self,
        ledger_txn: LedgerTransactionDB,
        prior_status: Optional[LedgerStatus],
    ) -> LedgerTransactionDB:
        """Restore the pre-match status once no confirmed reconciliation claims the transaction."""
        if await self.reconciliations.find_confirmed_for_ledger(ledger_txn.id):
            return ledger_txn
        if ledger_txn.status != LedgerStatus.RECONCILED:
            return ledger_txn
        restored = LedgerStatus(prior_status) if prior_status else LedgerStatus.CLEARED
        if restored == LedgerStatus.RECONCILED:
            restored = LedgerStatus.CLEARED
        return await self.ledger.update_status(ledger_txn, restored)
