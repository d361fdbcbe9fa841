"""
Unit Tests for ReconciliationStatusService

Tests:
- Progress formula and summary counts
- Bank vs book balances and discrepancy
- Unreconciled totals with monthly trend
- Last reconciliation info and per-user rollup
- Date range validation and access checks

Run with: pytest tests/test_status_service.py -v
"""

import pytest
from datetime import date, timedelta

from database.reconciliation_models import Direction, Inclusion, LedgerKind
from reconciliation.results import ReconciliationErrorCode
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.status_service import ReconciliationStatusService, calculate_progress
from reconciliation.stores import DateRange

from tests.conftest import BASE_DATE, OTHER_OWNER, OWNER


@pytest.fixture
def status_service(db):
    return ReconciliationStatusService(db, balance_tolerance=1)


@pytest.fixture
def service(db, config):
    return ReconciliationService(db, config)


class TestProgress:

    @pytest.mark.parametrize("total,reconciled,partial,excluded,expected", [
        (3, 2, 0, 0, 67),
        (4, 2, 0, 1, 67),
        (4, 1, 2, 0, 50),
        (5, 0, 0, 5, 100),
        (0, 0, 0, 0, 100),
        (4, 3, 0, 1, 100),
        (8, 1, 1, 0, 19),  # 18.75 rounds half up
    ])
    def test_calculate_progress(self, total, reconciled, partial, excluded, expected):
        assert calculate_progress(total, reconciled, partial, excluded) == expected


class TestStatusSummary:

    @pytest.mark.asyncio
    async def test_summary_counts(self, status_service, service, seed):
        account = await seed.account()
        matched = await seed.bank_line(account, 1000)
        partial = await seed.bank_line(account, 3000)
        await seed.bank_line(account, 500)
        await seed.bank_line(account, 200, inclusion=Inclusion.EXCLUDED)
        pending_line = await seed.bank_line(account, 800)
        full = await seed.ledger(1000)
        half = await seed.ledger(1500)
        suggestion = await seed.ledger(800)

        await service.create_match(matched.id, full.id, OWNER)
        await service.create_match(partial.id, half.id, OWNER)
        await service.suggest_match(pending_line.id, suggestion.id, OWNER)

        summary = (await status_service.get_status_summary(account.id, user_id=OWNER)).value

        assert summary.total_count == 5
        assert summary.reconciled_count == 1
        assert summary.partial_count == 1
        assert summary.unreconciled_count == 2
        assert summary.excluded_count == 1
        assert summary.pending_matches_count == 1
        # (1 + 0.5) / 4
        assert summary.reconciliation_progress == 38

    @pytest.mark.asyncio
    async def test_empty_account_is_fully_reconciled(self, status_service, seed):
        account = await seed.account()

        summary = (await status_service.get_status_summary(account.id)).value

        assert summary.total_count == 0
        assert summary.reconciliation_progress == 100

    @pytest.mark.asyncio
    async def test_date_range_filters_lines(self, status_service, seed):
        account = await seed.account()
        await seed.bank_line(account, 100, on=date(2025, 1, 15))
        await seed.bank_line(account, 100, on=date(2025, 2, 15))

        summary = (await status_service.get_status_summary(
            account.id, DateRange(date(2025, 2, 1), date(2025, 2, 28))
        )).value

        assert summary.total_count == 1

    @pytest.mark.asyncio
    async def test_inverted_date_range_is_invalid(self, status_service, seed):
        account = await seed.account()

        result = await status_service.get_status_summary(
            account.id, DateRange(date(2025, 3, 1), date(2025, 2, 1))
        )

        assert result.code == ReconciliationErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_account_and_access(self, status_service, seed):
        account = await seed.account(owner_id=OTHER_OWNER)

        missing = await status_service.get_status_summary("missing")
        denied = await status_service.get_status_summary(account.id, user_id=OWNER)

        assert missing.code == ReconciliationErrorCode.NOT_FOUND
        assert denied.code == ReconciliationErrorCode.ACCESS_DENIED


class TestBalances:

    @pytest.mark.asyncio
    async def test_partial_match_leaves_discrepancy(self, status_service, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 30000)
        txn = await seed.ledger(25000)

        before = (await status_service.calculate_balances(account.id)).value
        assert before.bank_balance == 30000
        assert before.book_balance == 0
        assert before.discrepancy == 30000
        assert before.is_balanced is False

        await service.create_match(line.id, txn.id, OWNER)
        after = (await status_service.calculate_balances(account.id)).value

        assert after.reconciled_credits == 25000
        assert after.total_matched_amount == 25000
        assert after.book_balance == 25000
        assert after.discrepancy == 5000
        assert after.unreconciled_credits == 5000
        assert after.discrepancy == after.unreconciled_credits - after.unreconciled_debits

    @pytest.mark.asyncio
    async def test_fully_matched_account_balances(self, status_service, service, seed):
        account = await seed.account()
        credit = await seed.bank_line(account, 12000)
        debit = await seed.bank_line(account, 4500, direction=Direction.DEBIT)
        income = await seed.ledger(12000)
        expense = await seed.ledger(4500, kind=LedgerKind.EXPENSE)

        await service.create_match(credit.id, income.id, OWNER)
        await service.create_match(debit.id, expense.id, OWNER)
        report = (await status_service.calculate_balances(account.id)).value

        assert report.total_credits == 12000
        assert report.total_debits == 4500
        assert report.bank_balance == 7500
        assert report.book_balance == 7500
        assert report.discrepancy == 0
        assert report.is_balanced is True
        assert report.unreconciled_credits == 0
        assert report.unreconciled_debits == 0

    @pytest.mark.asyncio
    async def test_excluded_lines_count_in_bank_balance(self, status_service, seed):
        account = await seed.account()
        await seed.bank_line(account, 900, inclusion=Inclusion.EXCLUDED)

        report = (await status_service.calculate_balances(account.id)).value

        assert report.bank_balance == 900
        assert report.unreconciled_credits == 0


class TestUnreconciledTotals:

    @pytest.mark.asyncio
    async def test_totals_and_monthly_trend(self, status_service, seed):
        account = await seed.account()
        await seed.bank_line(account, 1000, on=date(2025, 1, 5))
        await seed.bank_line(account, 400, direction=Direction.DEBIT, on=date(2025, 1, 20))
        await seed.bank_line(account, 2500, on=date(2025, 3, 2))
        await seed.bank_line(account, 999, on=date(2025, 3, 3), inclusion=Inclusion.EXCLUDED)

        totals = (await status_service.get_unreconciled_totals(account.id)).value

        assert totals["unreconciled_count"] == 3
        assert totals["unreconciled_credits"] == 3500
        assert totals["unreconciled_credits_count"] == 2
        assert totals["unreconciled_debits"] == 400
        assert totals["net_unreconciled"] == 3100
        assert totals["total_unreconciled_amount"] == 3900
        assert totals["oldest_unreconciled_date"] == "2025-01-05"
        assert [m["month"] for m in totals["by_month"]] == ["2025-03", "2025-01"]
        assert totals["by_month"][1] == {"month": "2025-01", "count": 2, "credits": 1000, "debits": 400, "net": 600}

    @pytest.mark.asyncio
    async def test_monthly_trend_is_capped(self, status_service, seed):
        account = await seed.account()
        for month in range(1, 13):
            await seed.bank_line(account, 100, on=date(2024, month, 1))
        await seed.bank_line(account, 100, on=date(2025, 1, 1))

        totals = (await status_service.get_unreconciled_totals(account.id)).value

        assert len(totals["by_month"]) == 12
        assert totals["by_month"][0]["month"] == "2025-01"
        assert totals["by_month"][-1]["month"] == "2024-02"
        assert totals["unreconciled_count"] == 13


class TestLastReconciliation:

    @pytest.mark.asyncio
    async def test_no_activity(self, status_service, seed):
        account = await seed.account()

        info = (await status_service.get_last_reconciliation_info(account.id)).value

        assert info["last_reconciled_at"] is None
        assert info["reconciled_today_count"] == 0
        assert info["last_reconciled_transaction_date"] is None

    @pytest.mark.asyncio
    async def test_latest_match(self, status_service, service, seed):
        account = await seed.account()
        early = await seed.bank_line(account, 100, on=BASE_DATE)
        late = await seed.bank_line(account, 200, on=BASE_DATE + timedelta(days=5))
        await service.create_match(early.id, (await seed.ledger(100)).id, OWNER)
        await service.create_match(late.id, (await seed.ledger(200, on=BASE_DATE + timedelta(days=5))).id, OWNER)

        info = (await status_service.get_last_reconciliation_info(account.id, user_id=OWNER)).value

        assert info["last_reconciled_by"] == OWNER
        assert info["last_reconciled_at"] is not None
        assert info["reconciled_today_count"] == 2
        assert info["last_reconciled_transaction_date"] == (BASE_DATE + timedelta(days=5)).isoformat()

    @pytest.mark.asyncio
    async def test_full_status_combines_reports(self, status_service, seed):
        account = await seed.account()
        await seed.bank_line(account, 100)

        full = (await status_service.get_full_status(account.id)).value

        assert full["account"]["id"] == account.id
        assert full["summary"]["total_count"] == 1
        assert full["balances"]["bank_balance"] == 100
        assert full["unreconciled"]["unreconciled_count"] == 1
        assert full["date_range"] is None


class TestStatusByUser:

    @pytest.mark.asyncio
    async def test_rollup_across_active_accounts(self, status_service, service, seed):
        current = await seed.account(account_name="Current")
        savings = await seed.account(account_name="Savings")
        await seed.account(account_name="Closed", is_active=False)
        await seed.account(owner_id=OTHER_OWNER)
        line = await seed.bank_line(current, 1000)
        await seed.bank_line(savings, 2000)
        await service.create_match(line.id, (await seed.ledger(1000)).id, OWNER)

        rollup = (await status_service.get_status_by_user(OWNER)).value

        assert rollup["account_count"] == 2
        assert [a["account"]["account_name"] for a in rollup["accounts"]] == ["Current", "Savings"]
        assert rollup["totals"]["total_count"] == 2
        assert rollup["totals"]["reconciled_count"] == 1
        assert rollup["overall_progress"] == 50
        assert rollup["total_discrepancy"] == 2000

    @pytest.mark.asyncio
    async def test_user_without_accounts(self, status_service):
        rollup = (await status_service.get_status_by_user("nobody")).value

        assert rollup["account_count"] == 0
        assert rollup["overall_progress"] == 100


class TestAuditLog:

    @pytest.mark.asyncio
    async def test_entries_newest_first(self, status_service, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 100)
        created = await service.create_match(line.id, (await seed.ledger(100)).id, OWNER)
        await service.remove_match(created.value.reconciliation["id"], OWNER)

        log = (await status_service.get_audit_log(account.id, user_id=OWNER)).value

        assert [e["action"] for e in log["entries"]] == ["match_removed", "match_created"]
        assert log["entries"][1]["details"]["match_amount"] == 100
        assert log["entries"][1]["actor"] == OWNER

    @pytest.mark.asyncio
    async def test_limit_and_access(self, status_service, seed):
        account = await seed.account(owner_id=OTHER_OWNER)

        assert (await status_service.get_audit_log(account.id, limit=0)).code == ReconciliationErrorCode.INVALID_INPUT
        assert (await status_service.get_audit_log(account.id, user_id=OWNER)).code == ReconciliationErrorCode.ACCESS_DENIED
