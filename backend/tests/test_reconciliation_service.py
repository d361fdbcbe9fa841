"""
Unit Tests for ReconciliationService

Tests against an in-memory SQLite database:
- Candidate search (ranking, filtering, window widening, access checks)
- validate_match hard errors and amount-mismatch warnings
- create_match state changes, duplicates, splits and the unique-index backstop
- remove_match / unreconcile_bank_line reversibility
- Suggestions and bank line exclusion
- Storage failures surfaced as STORAGE_FAILURE

Run with: pytest tests/test_reconciliation_service.py -v
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from database.reconciliation_models import (
    BankLineStatus,
    Direction,
    Inclusion,
    LedgerKind,
    LedgerStatus,
    MatchType,
    ReconciliationAuditLogDB,
    ReconciliationDB,
    ReconciliationStatus,
    AuditAction,
)
from reconciliation.results import Err, Ok, ReconciliationErrorCode
from reconciliation.services.reconciliation_service import (
    CreateMatchOptions,
    ReconciliationService,
)

from tests.conftest import BASE_DATE, OTHER_OWNER, OWNER


async def count_rows(db, model, *criteria):
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar()


@pytest.fixture
def service(db, config):
    return ReconciliationService(db, config)


class TestFindPotentialMatches:

    @pytest.mark.asyncio
    async def test_missing_line_returns_not_found(self, service):
        result = await service.find_potential_matches("does-not-exist")

        assert isinstance(result, Err)
        assert result.code == ReconciliationErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_line_is_denied(self, service, seed):
        account = await seed.account(owner_id=OTHER_OWNER)
        line = await seed.bank_line(account, 5000)

        result = await service.find_potential_matches(line.id, user_id=OWNER)

        assert result.code == ReconciliationErrorCode.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_candidates_ranked_best_first(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 12000, description="Acme Ltd invoice payment")
        near = await seed.ledger(11900, on=BASE_DATE + timedelta(days=3), description="Acme invoice")
        exact = await seed.ledger(12000, description="Acme Ltd invoice payment")
        await seed.ledger(12000, kind=LedgerKind.EXPENSE, description="Acme Ltd invoice payment")

        result = await service.find_potential_matches(line.id, user_id=OWNER)

        assert isinstance(result, Ok)
        ids = [c.ledger_transaction_id for c in result.value.candidates]
        assert ids == [exact.id, near.id]
        assert result.value.candidates[0].score >= 90

    @pytest.mark.asyncio
    async def test_void_reconciled_and_other_owner_transactions_are_skipped(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 4000)
        await seed.ledger(4000, status=LedgerStatus.VOID)
        await seed.ledger(4000, status=LedgerStatus.RECONCILED)
        await seed.ledger(4000, owner_id=OTHER_OWNER)
        pending = await seed.ledger(4000, status=LedgerStatus.PENDING)

        result = await service.find_potential_matches(line.id)

        assert [c.ledger_transaction_id for c in result.value.candidates] == [pending.id]

    @pytest.mark.asyncio
    async def test_window_widens_when_too_few_candidates(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 7000, description="Quarterly retainer")
        far = await seed.ledger(7000, on=BASE_DATE + timedelta(days=20), description="Quarterly retainer")
        await seed.ledger(7000, on=BASE_DATE + timedelta(days=45))

        result = await service.find_potential_matches(line.id)

        assert result.value.widened is True
        assert result.value.window_days == 30
        assert [c.ledger_transaction_id for c in result.value.candidates] == [far.id]

    @pytest.mark.asyncio
    async def test_partial_line_ranks_against_unmatched_remainder(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 30000, description="Northwind settlement batch")
        first = await seed.ledger(20000, description="Northwind settlement batch")
        remainder = await seed.ledger(10000, description="Northwind settlement batch")
        full_amount = await seed.ledger(30000, description="Northwind settlement batch")
        assert (await service.create_match(line.id, first.id, OWNER)).success

        result = await service.find_potential_matches(line.id, OWNER)

        ranked = [(c.ledger_transaction_id, c.score) for c in result.value.candidates]
        assert ranked == [(remainder.id, 90), (full_amount.id, 40)]
        assert result.value.remaining_amount == 10000

    @pytest.mark.asyncio
    async def test_min_confidence_and_limit(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        for offset in (0, 2, 4, 6):
            await seed.ledger(10000, on=BASE_DATE + timedelta(days=offset))

        limited = await service.find_potential_matches(line.id, limit=2)
        strict = await service.find_potential_matches(line.id, min_confidence=70)

        assert len(limited.value.candidates) == 2
        assert all(c.score >= 70 for c in strict.value.candidates)
        assert len(strict.value.candidates) == 2

    @pytest.mark.asyncio
    async def test_excluded_and_matched_lines_are_rejected(self, service, seed):
        account = await seed.account()
        excluded = await seed.bank_line(account, 100, inclusion=Inclusion.EXCLUDED)
        matched = await seed.bank_line(
            account, 100, reconciliation_status=BankLineStatus.MATCHED, is_reconciled=True
        )

        assert (await service.find_potential_matches(excluded.id)).code == ReconciliationErrorCode.ALREADY_RECONCILED
        assert (await service.find_potential_matches(matched.id)).code == ReconciliationErrorCode.ALREADY_RECONCILED

    @pytest.mark.asyncio
    async def test_invalid_min_confidence(self, service):
        result = await service.find_potential_matches("any", min_confidence=101)
        assert result.code == ReconciliationErrorCode.INVALID_INPUT


class TestValidateMatch:

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_only_a_warning(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        txn = await seed.ledger(9800)

        result = await service.validate_match(line.id, txn.id)

        assert result.value.valid is True
        assert [w.code for w in result.value.warnings] == [ReconciliationErrorCode.AMOUNT_MISMATCH]

    @pytest.mark.asyncio
    async def test_hard_errors(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000, direction=Direction.DEBIT)
        void_income = await seed.ledger(10000, kind=LedgerKind.INCOME, status=LedgerStatus.VOID)

        result = await service.validate_match(line.id, void_income.id)

        codes = {e.code for e in result.value.errors}
        assert result.value.valid is False
        assert ReconciliationErrorCode.INCOMPATIBLE_TYPES in codes
        assert ReconciliationErrorCode.INVALID_INPUT in codes

    @pytest.mark.asyncio
    async def test_missing_records(self, service):
        result = await service.validate_match("no-line", "no-txn")

        assert result.value.valid is False
        assert len(result.value.errors) == 2


class TestCreateMatch:

    @pytest.mark.asyncio
    async def test_exact_match_updates_both_sides(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 25000, description="Consulting fee March")
        txn = await seed.ledger(25000, description="Consulting fee March")

        result = await service.create_match(line.id, txn.id, OWNER)

        assert isinstance(result, Ok)
        reconciliation = result.value.reconciliation
        assert reconciliation["match_type"] == "exact"
        assert reconciliation["match_amount"] == 25000
        assert reconciliation["match_confidence"] >= 90
        assert reconciliation["reconciled_by"] == OWNER
        assert result.value.bank_line["reconciliation_status"] == "matched"
        assert result.value.bank_line["is_reconciled"] is True
        assert result.value.ledger_transaction["status"] == "reconciled"

        audit_rows = await count_rows(
            db, ReconciliationAuditLogDB, ReconciliationAuditLogDB.action == AuditAction.MATCH_CREATED
        )
        assert audit_rows == 1

    @pytest.mark.asyncio
    async def test_duplicate_match_is_already_reconciled(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000)

        first = await service.create_match(line.id, txn.id, OWNER)
        second = await service.create_match(line.id, txn.id, OWNER)

        assert first.success is True
        assert second.code == ReconciliationErrorCode.ALREADY_RECONCILED
        assert await count_rows(db, ReconciliationDB) == 1

    @pytest.mark.asyncio
    async def test_incompatible_types_rejected(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 5000, direction=Direction.CREDIT)
        txn = await seed.ledger(5000, kind=LedgerKind.EXPENSE)

        result = await service.create_match(line.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.INCOMPATIBLE_TYPES

    @pytest.mark.asyncio
    async def test_other_user_cannot_match(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000)

        result = await service.create_match(line.id, txn.id, OTHER_OWNER)

        assert result.code == ReconciliationErrorCode.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_ledger_of_another_owner_is_denied(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000, owner_id=OTHER_OWNER)

        result = await service.create_match(line.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.ACCESS_DENIED

    @pytest.mark.asyncio
    async def test_amount_above_remaining_is_invalid(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 5000)
        txn = await seed.ledger(8000)

        result = await service.create_match(line.id, txn.id, OWNER, CreateMatchOptions(match_amount=6000))

        assert result.code == ReconciliationErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_split_funding_never_exceeds_line_amount(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        part_a = await seed.ledger(6000)
        part_b = await seed.ledger(4000)
        extra = await seed.ledger(1000)

        first = await service.create_match(line.id, part_a.id, OWNER)
        assert first.value.bank_line["reconciliation_status"] == "partial"
        assert first.value.reconciliation["match_type"] == "partial"

        second = await service.create_match(line.id, part_b.id, OWNER)
        assert second.value.reconciliation["match_type"] == "split"
        assert second.value.bank_line["reconciliation_status"] == "matched"

        third = await service.create_match(line.id, extra.id, OWNER)
        assert third.code == ReconciliationErrorCode.ALREADY_RECONCILED

        total = await db.execute(
            select(func.sum(ReconciliationDB.match_amount)).where(ReconciliationDB.bank_line_id == line.id)
        )
        assert total.scalar() == 10000

    @pytest.mark.asyncio
    async def test_ledger_cannot_be_claimed_twice(self, service, seed):
        account = await seed.account()
        line_a = await seed.bank_line(account, 5000)
        line_b = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000)

        assert (await service.create_match(line_a.id, txn.id, OWNER)).success
        result = await service.create_match(line_b.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.ALREADY_RECONCILED

    @pytest.mark.asyncio
    async def test_forced_match_has_no_confidence(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 5000, on=BASE_DATE)
        txn = await seed.ledger(5000, on=BASE_DATE + timedelta(days=60))

        result = await service.create_match(line.id, txn.id, OWNER, CreateMatchOptions(force=True, notes="Agreed with client"))

        assert result.value.reconciliation["match_type"] == MatchType.MANUAL.value
        assert result.value.reconciliation["match_confidence"] is None
        assert result.value.reconciliation["notes"] == "Agreed with client"

    @pytest.mark.asyncio
    async def test_unique_index_backstop_reports_already_reconciled(self, service, seed, db, monkeypatch):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        txn = await seed.ledger(5000)
        assert (await service.create_match(line.id, txn.id, OWNER)).success

        async def skip_checks(line, ledger_txn, validation):
            return validation

        monkeypatch.setattr(service, "_collect_issues", skip_checks)
        result = await service.create_match(line.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.ALREADY_RECONCILED
        assert await count_rows(db, ReconciliationDB) == 1

    @pytest.mark.asyncio
    async def test_unique_index_backstop_reports_concurrency_conflict(self, service, seed, db, monkeypatch):
        account = await seed.account()
        line_a = await seed.bank_line(account, 5000)
        line_b = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000)
        assert (await service.create_match(line_a.id, txn.id, OWNER)).success

        async def skip_checks(line, ledger_txn, validation):
            return validation

        monkeypatch.setattr(service, "_collect_issues", skip_checks)
        result = await service.create_match(line_b.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.CONCURRENCY_CONFLICT
        await db.refresh(line_b)
        assert line_b.reconciliation_status == BankLineStatus.UNMATCHED

    @pytest.mark.asyncio
    async def test_write_paths_lock_the_bank_line(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        part_a = await seed.ledger(6000)
        part_b = await seed.ledger(4000)
        service.bank_lines.get = AsyncMock(wraps=service.bank_lines.get)

        await service.find_potential_matches(line.id, OWNER)
        service.bank_lines.get.assert_awaited_with(line.id, for_update=False)

        created = await service.create_match(line.id, part_a.id, OWNER)
        service.bank_lines.get.assert_awaited_with(line.id, for_update=True)

        await service.remove_match(created.value.reconciliation["id"], OWNER)
        service.bank_lines.get.assert_awaited_with(line.id, for_update=True)

        suggested = await service.suggest_match(line.id, part_b.id, OWNER)
        service.bank_lines.get.reset_mock()
        await service.confirm_suggestion(suggested.value["id"], OWNER)
        service.bank_lines.get.assert_awaited_once_with(line.id, for_update=True)

        service.bank_lines.get.reset_mock()
        await service.unreconcile_bank_line(line.id, OWNER)
        service.bank_lines.get.assert_awaited_once_with(line.id, for_update=True)

        for toggle in (service.exclude_bank_line, service.include_bank_line):
            service.bank_lines.get.reset_mock()
            assert (await toggle(line.id, OWNER)).success
            service.bank_lines.get.assert_awaited_once_with(line.id, for_update=True)

    @pytest.mark.asyncio
    async def test_second_session_sees_committed_split(self, service, seed, session_factory):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        part_a = await seed.ledger(6000)
        part_b = await seed.ledger(6000)
        assert (await service.create_match(line.id, part_a.id, OWNER)).success

        # The line and its confirmed total are reloaded, not served from a stale session
        async with session_factory() as other_db:
            other = ReconciliationService(other_db, service.config)
            result = await other.create_match(line.id, part_b.id, OWNER, CreateMatchOptions(match_amount=6000))

        assert result.code == ReconciliationErrorCode.INVALID_INPUT
        assert result.error.details["remaining"] == 4000

    @pytest.mark.asyncio
    async def test_storage_failure_is_generic(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 5000)
        txn = await seed.ledger(5000)
        service.reconciliations.confirmed_total = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
        )

        result = await service.create_match(line.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.STORAGE_FAILURE
        assert "disk" not in result.error.message


class TestReverse:

    @pytest.mark.asyncio
    async def test_remove_match_restores_prior_state(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 3000)
        txn = await seed.ledger(3000, status=LedgerStatus.PENDING)

        created = await service.create_match(line.id, txn.id, OWNER)
        removed = await service.remove_match(created.value.reconciliation["id"], OWNER)

        assert removed.success is True
        assert removed.value["bank_line"]["reconciliation_status"] == "unmatched"
        assert removed.value["bank_line"]["is_reconciled"] is False
        assert removed.value["ledger_transaction"]["status"] == "pending"
        assert await count_rows(db, ReconciliationDB) == 0

        found = await service.find_potential_matches(line.id, OWNER)
        assert [c.ledger_transaction_id for c in found.value.candidates] == [txn.id]

    @pytest.mark.asyncio
    async def test_remove_one_split_leaves_line_partial(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        part_a = await seed.ledger(6000)
        part_b = await seed.ledger(4000)
        first = await service.create_match(line.id, part_a.id, OWNER)
        await service.create_match(line.id, part_b.id, OWNER)

        removed = await service.remove_match(first.value.reconciliation["id"], OWNER)

        assert removed.value["bank_line"]["reconciliation_status"] == "partial"
        assert removed.value["ledger_transaction"]["status"] == "cleared"

    @pytest.mark.asyncio
    async def test_remove_missing_match(self, service):
        result = await service.remove_match("missing", OWNER)
        assert result.code == ReconciliationErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unreconcile_removes_all_matches(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)
        part_a = await seed.ledger(6000)
        part_b = await seed.ledger(4000)
        await service.create_match(line.id, part_a.id, OWNER)
        await service.create_match(line.id, part_b.id, OWNER)

        result = await service.unreconcile_bank_line(line.id, OWNER)

        assert result.value["removed_count"] == 2
        assert result.value["bank_line"]["reconciliation_status"] == "unmatched"
        assert await count_rows(db, ReconciliationDB) == 0
        await db.refresh(part_a)
        await db.refresh(part_b)
        assert part_a.status == LedgerStatus.CLEARED
        assert part_b.status == LedgerStatus.CLEARED

    @pytest.mark.asyncio
    async def test_unreconcile_denied_for_other_user(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 10000)

        result = await service.unreconcile_bank_line(line.id, OTHER_OWNER)

        assert result.code == ReconciliationErrorCode.ACCESS_DENIED


class TestSuggestions:

    @pytest.mark.asyncio
    async def test_suggest_then_confirm(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 4200, description="Card refund")
        txn = await seed.ledger(4200, description="Card refund")

        suggested = await service.suggest_match(line.id, txn.id, OWNER)
        assert suggested.value["status"] == "pending"
        await db.refresh(line)
        assert line.reconciliation_status == BankLineStatus.UNMATCHED

        confirmed = await service.confirm_suggestion(suggested.value["id"], OWNER)

        assert confirmed.value.reconciliation["id"] == suggested.value["id"]
        assert confirmed.value.reconciliation["status"] == "confirmed"
        assert confirmed.value.bank_line["reconciliation_status"] == "matched"
        assert await count_rows(db, ReconciliationDB) == 1

    @pytest.mark.asyncio
    async def test_suggesting_twice_returns_existing(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 4200)
        txn = await seed.ledger(4200)

        first = await service.suggest_match(line.id, txn.id, OWNER, confidence=80)
        second = await service.suggest_match(line.id, txn.id, OWNER)

        assert first.value["id"] == second.value["id"]
        assert await count_rows(db, ReconciliationDB) == 1

    @pytest.mark.asyncio
    async def test_reject_deletes_pending_and_audits_reason(self, service, seed, db):
        account = await seed.account()
        line = await seed.bank_line(account, 4200)
        txn = await seed.ledger(4200)
        suggested = await service.suggest_match(line.id, txn.id, OWNER)

        result = await service.reject_suggestion(suggested.value["id"], OWNER, reason="Different customer")

        assert result.value["rejected"] is True
        assert await count_rows(db, ReconciliationDB) == 0
        audit = await db.execute(
            select(ReconciliationAuditLogDB).where(ReconciliationAuditLogDB.action == AuditAction.SUGGESTION_REJECTED)
        )
        assert audit.scalars().one().details["reason"] == "Different customer"

    @pytest.mark.asyncio
    async def test_confirmed_match_cannot_be_rejected(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 4200)
        txn = await seed.ledger(4200)
        created = await service.create_match(line.id, txn.id, OWNER)

        result = await service.reject_suggestion(created.value.reconciliation["id"], OWNER)

        assert result.code == ReconciliationErrorCode.INVALID_INPUT


class TestExclusion:

    @pytest.mark.asyncio
    async def test_exclude_and_include(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 99)

        excluded = await service.exclude_bank_line(line.id, OWNER, notes="Bank fee reversal")
        assert excluded.value["effective_status"] == "excluded"
        assert excluded.value["notes"] == "Bank fee reversal"

        included = await service.include_bank_line(line.id, OWNER)
        assert included.value["effective_status"] == "unmatched"

    @pytest.mark.asyncio
    async def test_cannot_exclude_reconciled_line(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 500)
        txn = await seed.ledger(500)
        await service.create_match(line.id, txn.id, OWNER)

        result = await service.exclude_bank_line(line.id, OWNER)

        assert result.code == ReconciliationErrorCode.ALREADY_RECONCILED

    @pytest.mark.asyncio
    async def test_excluded_line_cannot_be_matched(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 500)
        txn = await seed.ledger(500)
        await service.exclude_bank_line(line.id, OWNER)

        result = await service.create_match(line.id, txn.id, OWNER)

        assert result.code == ReconciliationErrorCode.ALREADY_RECONCILED

    @pytest.mark.asyncio
    async def test_list_reconciliations(self, service, seed):
        account = await seed.account()
        line = await seed.bank_line(account, 500)
        txn = await seed.ledger(500)
        await service.create_match(line.id, txn.id, OWNER)

        result = await service.list_reconciliations(line.id, user_id=OWNER)

        assert [r["ledger_transaction_id"] for r in result.value] == [txn.id]
        assert result.value[0]["status"] == ReconciliationStatus.CONFIRMED.value
