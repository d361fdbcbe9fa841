"""
Reconciliation Status Service

Read-only reporting over bank lines and confirmed reconciliations:
- Status summary and reconciliation progress
- Bank vs book balances and the discrepancy between them
- Unreconciled totals with a monthly trend
- Last reconciliation activity
- Per-user rollup across active accounts
- Recent audit trail entries

Progress = round(100 * (reconciled + 0.5 * partial) / (total - excluded)),
or 100 when every line is excluded or there are none.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankAccountDB,
    BankLineStatus,
    Direction,
    Inclusion,
)
from reconciliation.matching_rules.bank_rules import round_half_up
from reconciliation.results import (
    Ok,
    ReconciliationErrorCode,
    Result,
    err,
    storage_failure,
)
from reconciliation.stores import (
    AuditLogStore,
    BankAccountStore,
    BankLineStore,
    DateRange,
    ReconciliationStore,
)

logger = logging.getLogger(__name__)

MONTHLY_TREND_MONTHS = 12


def calculate_progress(total: int, reconciled: int, partial: int, excluded: int) -> int:
    effective_total = total - excluded
    if effective_total <= 0:
        return 100
    progress = round_half_up(100 * (reconciled + 0.5 * partial) / effective_total)
    return min(100, max(0, progress))


@dataclass
class StatusSummary:
    total_count: int = 0
    reconciled_count: int = 0
    partial_count: int = 0
    unreconciled_count: int = 0
    excluded_count: int = 0
    pending_matches_count: int = 0
    reconciliation_progress: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_count": self.total_count,
            "reconciled_count": self.reconciled_count,
            "partial_count": self.partial_count,
            "unreconciled_count": self.unreconciled_count,
            "excluded_count": self.excluded_count,
            "pending_matches_count": self.pending_matches_count,
            "reconciliation_progress": self.reconciliation_progress,
        }


@dataclass
class BalanceReport:
    total_credits: int = 0
    total_debits: int = 0
    bank_balance: int = 0
    reconciled_credits: int = 0
    reconciled_debits: int = 0
    total_matched_amount: int = 0
    book_balance: int = 0
    discrepancy: int = 0
    is_balanced: bool = True
    unreconciled_credits: int = 0
    unreconciled_debits: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class ReconciliationStatusService:
    """Aggregates reconciliation state for dashboards and reports."""

    def __init__(self, db: AsyncSession, balance_tolerance: Optional[int] = None):
        self.db = db
        if balance_tolerance is None:
            balance_tolerance = get_settings().RECON_BALANCE_TOLERANCE
        self.balance_tolerance = balance_tolerance
        self.accounts = BankAccountStore(db)
        self.bank_lines = BankLineStore(db)
        self.reconciliations = ReconciliationStore(db)

    # ==================== PUBLIC API ====================

    async def get_status_summary(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        user_id: Optional[str] = None,
    ) -> Result[StatusSummary]:
        return await self._run(account_id, user_id, date_range, self._summary)

    async def calculate_balances(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        user_id: Optional[str] = None,
    ) -> Result[BalanceReport]:
        return await self._run(account_id, user_id, date_range, self._balances)

    async def get_unreconciled_totals(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        user_id: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        return await self._run(account_id, user_id, date_range, self._unreconciled)

    async def get_last_reconciliation_info(
        self,
        account_id: str,
        user_id: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        return await self._run(account_id, user_id, None, self._last_info)

    async def get_full_status(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        user_id: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        async def full(account: BankAccountDB, dr: Optional[DateRange]) -> Dict[str, Any]:
            summary = await self._summary(account, dr)
            balances = await self._balances(account, dr)
            unreconciled = await self._unreconciled(account, dr)
            last = await self._last_info(account, None)
            return {
                "account": account.to_dict(),
                "summary": summary.to_dict(),
                "balances": balances.to_dict(),
                "unreconciled": unreconciled,
                "last_reconciliation": last,
                "date_range": dr.to_dict() if dr else None,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            }

        return await self._run(account_id, user_id, date_range, full)

    async def get_audit_log(
        self,
        account_id: str,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> Result[Dict[str, Any]]:
        """Most recent audit entries for an account, newest first."""
        if limit < 1:
            return err(ReconciliationErrorCode.INVALID_INPUT, "limit must be a positive integer")

        async def entries(account: BankAccountDB, _dr: Optional[DateRange]) -> Dict[str, Any]:
            rows = await AuditLogStore(self.db).list_for_account(account.id, limit)
            return {"account_id": account.id, "entries": [r.to_dict() for r in rows]}

        return await self._run(account_id, user_id, None, entries)

    async def get_status_by_user(self, user_id: str) -> Result[Dict[str, Any]]:
        """Roll up every active account of a user."""
        try:
            accounts = await self.accounts.list_active(user_id)
            per_account = []
            totals = StatusSummary(reconciliation_progress=0)
            total_discrepancy = 0
            for account in accounts:
                summary = await self._summary(account, None)
                balances = await self._balances(account, None)
                per_account.append({
                    "account": account.to_dict(),
                    "summary": summary.to_dict(),
                    "balances": balances.to_dict(),
                })
                totals.total_count += summary.total_count
                totals.reconciled_count += summary.reconciled_count
                totals.partial_count += summary.partial_count
                totals.unreconciled_count += summary.unreconciled_count
                totals.excluded_count += summary.excluded_count
                totals.pending_matches_count += summary.pending_matches_count
                total_discrepancy += balances.discrepancy
        except SQLAlchemyError:
            logger.exception(f"Status rollup failed for user {user_id}")
            return storage_failure()

        totals.reconciliation_progress = calculate_progress(
            totals.total_count, totals.reconciled_count, totals.partial_count, totals.excluded_count
        )
        return Ok({
            "user_id": user_id,
            "accounts": per_account,
            "account_count": len(per_account),
            "totals": totals.to_dict(),
            "total_discrepancy": total_discrepancy,
            "overall_progress": totals.reconciliation_progress,
        })

    # ==================== INTERNALS ====================

    async def _run(self, account_id, user_id, date_range, builder) -> Result:
        if date_range is not None and not date_range.is_valid:
            return err(
                ReconciliationErrorCode.INVALID_INPUT,
                "start date must not be after end date",
                **date_range.to_dict(),
            )
        try:
            account = await self.accounts.get(account_id)
            if not account:
                return err(ReconciliationErrorCode.NOT_FOUND, f"Bank account {account_id} not found")
            if user_id is not None and account.owner_id != user_id:
                return err(ReconciliationErrorCode.ACCESS_DENIED, "Bank account does not belong to this user")
            return Ok(await builder(account, date_range))
        except SQLAlchemyError:
            logger.exception(f"Status query failed for account {account_id}")
            return storage_failure()

    async def _summary(self, account: BankAccountDB, date_range: Optional[DateRange]) -> StatusSummary:
        summary = StatusSummary()
        for row in await self.bank_lines.status_breakdown(account.id, date_range):
            count = int(row.count)
            summary.total_count += count
            if row.inclusion == Inclusion.EXCLUDED:
                summary.excluded_count += count
            elif row.reconciliation_status == BankLineStatus.MATCHED:
                summary.reconciled_count += count
            elif row.reconciliation_status == BankLineStatus.PARTIAL:
                summary.partial_count += count
            else:
                summary.unreconciled_count += count

        summary.pending_matches_count = await self.reconciliations.count_pending(account.id, date_range)
        summary.reconciliation_progress = calculate_progress(
            summary.total_count, summary.reconciled_count, summary.partial_count, summary.excluded_count
        )
        return summary

    async def _balances(self, account: BankAccountDB, date_range: Optional[DateRange]) -> BalanceReport:
        report = BalanceReport()
        active_credits = active_debits = 0
        for row in await self.bank_lines.status_breakdown(account.id, date_range):
            amount = int(row.amount or 0)
            is_credit = row.direction == Direction.CREDIT
            if is_credit:
                report.total_credits += amount
            else:
                report.total_debits += amount
            if row.inclusion == Inclusion.ACTIVE:
                if is_credit:
                    active_credits += amount
                else:
                    active_debits += amount

        matched = await self.reconciliations.confirmed_totals_by_direction(account.id, date_range)
        report.reconciled_credits = matched["credits"]
        report.reconciled_debits = matched["debits"]
        report.total_matched_amount = matched["credits"] + matched["debits"]
        # Excluded lines carry no confirmed matches, so this leaves the
        # unmatched remainder of unmatched and partial lines
        report.unreconciled_credits = max(0, active_credits - report.reconciled_credits)
        report.unreconciled_debits = max(0, active_debits - report.reconciled_debits)

        report.bank_balance = report.total_credits - report.total_debits
        report.book_balance = report.reconciled_credits - report.reconciled_debits
        report.discrepancy = report.bank_balance - report.book_balance
        report.is_balanced = abs(report.discrepancy) < self.balance_tolerance
        return report

    async def _unreconciled(self, account: BankAccountDB, date_range: Optional[DateRange]) -> Dict[str, Any]:
        rows = await self.bank_lines.list_unreconciled(account.id, date_range)

        credits = debits = credit_count = debit_count = 0
        months: Dict[str, Dict[str, Any]] = OrderedDict()
        for row in rows:
            amount = int(row.amount)
            month = months.setdefault(row.date.strftime("%Y-%m"), {"count": 0, "credits": 0, "debits": 0})
            month["count"] += 1
            if row.direction == Direction.CREDIT:
                credits += amount
                credit_count += 1
                month["credits"] += amount
            else:
                debits += amount
                debit_count += 1
                month["debits"] += amount

        by_month = [
            {"month": key, **values, "net": values["credits"] - values["debits"]}
            for key, values in sorted(months.items(), reverse=True)[:MONTHLY_TREND_MONTHS]
        ]

        return {
            "unreconciled_count": len(rows),
            "total_unreconciled_amount": credits + debits,
            "unreconciled_credits": credits,
            "unreconciled_credits_count": credit_count,
            "unreconciled_debits": debits,
            "unreconciled_debits_count": debit_count,
            "net_unreconciled": credits - debits,
            "oldest_unreconciled_date": rows[0].date.isoformat() if rows else None,
            "by_month": by_month,
        }

    async def _last_info(self, account: BankAccountDB, _date_range: Optional[DateRange]) -> Dict[str, Any]:
        latest = await self.reconciliations.latest_confirmed(account.id)
        today_start = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
        today_count = await self.reconciliations.count_confirmed_since(account.id, today_start)
        last_date = await self.bank_lines.last_reconciled_date(account.id)

        return {
            "last_reconciled_at": latest.reconciled_at.isoformat() if latest else None,
            "last_reconciled_by": latest.reconciled_by if latest else None,
            "reconciled_today_count": today_count,
            "last_reconciled_transaction_date": last_date.isoformat() if last_date else None,
        }
