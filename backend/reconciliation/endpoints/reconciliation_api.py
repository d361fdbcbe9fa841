"""
Reconciliation API Endpoints

REST API for the bank reconciliation engine:
- GET  /api/reconciliation/status - Module status
- GET  /api/reconciliation/bank-lines/{id}/candidates - Ranked match candidates
- GET  /api/reconciliation/bank-lines/{id}/validate/{ledger_id} - Validate a match
- GET  /api/reconciliation/bank-lines/{id}/matches - Reconciliations of a line
- POST /api/reconciliation/matches - Confirm a match
- DELETE /api/reconciliation/matches/{id} - Reverse a match
- POST /api/reconciliation/bank-lines/{id}/unreconcile - Reverse all matches of a line
- POST /api/reconciliation/bank-lines/{id}/exclude - Exclude a line
- POST /api/reconciliation/bank-lines/{id}/include - Re-include a line
- POST /api/reconciliation/suggestions - Store a pending suggestion
- POST /api/reconciliation/suggestions/{id}/confirm - Confirm a suggestion
- POST /api/reconciliation/suggestions/{id}/reject - Reject a suggestion
- POST /api/reconciliation/accounts/{id}/auto-reconcile - Batch auto-match
- GET  /api/reconciliation/accounts/{id}/summary|balances|unreconciled|last-reconciliation|full-status
- GET  /api/reconciliation/accounts/{id}/audit-log - Recent audit entries
- GET  /api/reconciliation/users/{id}/status - Rollup across a user's accounts
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db
from database.reconciliation_models import MatchType
from reconciliation.results import Err, ReconciliationErrorCode, Result
from reconciliation.services.auto_reconciler import AutoReconciler, AutoReconcileOptions
from reconciliation.services.reconciliation_service import CreateMatchOptions, ReconciliationService
from reconciliation.services.status_service import ReconciliationStatusService
from reconciliation.matching_rules.bank_rules import MatchingConfig
from reconciliation.stores import DateRange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


ERROR_STATUS = {
    ReconciliationErrorCode.NOT_FOUND: 404,
    ReconciliationErrorCode.ALREADY_RECONCILED: 409,
    ReconciliationErrorCode.INCOMPATIBLE_TYPES: 422,
    ReconciliationErrorCode.AMOUNT_MISMATCH: 422,
    ReconciliationErrorCode.ACCESS_DENIED: 403,
    ReconciliationErrorCode.CONCURRENCY_CONFLICT: 409,
    ReconciliationErrorCode.INVALID_INPUT: 400,
    ReconciliationErrorCode.STORAGE_FAILURE: 503,
}


# ==================== Request Models ====================

class CreateMatchRequest(BaseModel):
    """Request to confirm a match."""
    bank_line_id: str = Field(..., description="Bank line ID")
    ledger_transaction_id: str = Field(..., description="Ledger transaction ID")
    match_amount: Optional[int] = Field(default=None, ge=0, description="Amount in minor units; defaults to the unreconciled amount")
    match_type: Optional[MatchType] = Field(default=None, description="Override the derived match type")
    notes: Optional[str] = Field(default=None, description="Free-text notes")
    force: bool = Field(default=False, description="Manual match without a confidence score")


class SuggestMatchRequest(BaseModel):
    """Request to store a pending suggestion."""
    bank_line_id: str
    ledger_transaction_id: str
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None


class RejectSuggestionRequest(BaseModel):
    """Request to reject a suggestion."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


class ExclusionRequest(BaseModel):
    notes: Optional[str] = Field(default=None, description="Why the line is excluded/included")


class AutoReconcileRequest(BaseModel):
    """Request to run auto-reconciliation for an account."""
    min_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    dry_run: bool = Field(default=False, description="Report what would be matched without saving")
    max_items: Optional[int] = Field(default=None, ge=1)


# ==================== Authentication ====================

def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    valid_keys = get_settings().internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


def get_acting_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """The user on whose behalf the calling service acts."""
    if not x_user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-Id header")
    return x_user_id


def get_matching_config() -> MatchingConfig:
    return MatchingConfig.from_settings(get_settings())


def date_range_params(
    start_date: Optional[date] = Query(None, description="Inclusive start date (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Inclusive end date (YYYY-MM-DD)"),
) -> Optional[DateRange]:
    if start_date is None and end_date is None:
        return None
    return DateRange(start=start_date, end=end_date)


def unwrap(result: Result):
    """Return the Ok payload or raise the HTTP error for an Err."""
    if isinstance(result, Err):
        status_code = ERROR_STATUS.get(result.code, 400)
        if status_code >= 500:
            logger.error(f"Reconciliation request failed: {result.error.message}")
        raise HTTPException(status_code=status_code, detail=result.error.to_dict())
    value = result.value
    return value.to_dict() if hasattr(value, "to_dict") else value


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "candidate_matching": True,
            "split_matching": True,
            "suggestions": True,
            "auto_reconcile": True,
            "balance_reporting": True,
        },
        "matching": get_matching_config().to_dict(),
        "auto_min_confidence": settings.RECON_AUTO_MIN_CONFIDENCE,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/bank-lines/{bank_line_id}/candidates", summary="Find match candidates")
async def find_candidates(
    bank_line_id: str,
    min_confidence: int = Query(1, ge=0, le=100),
    limit: Optional[int] = Query(None, ge=1, le=100),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    """Rank unreconciled ledger transactions for a bank line."""
    service = ReconciliationService(db, config)
    return unwrap(await service.find_potential_matches(
        bank_line_id, user_id=user_id, min_confidence=min_confidence, limit=limit
    ))


@router.get("/bank-lines/{bank_line_id}/validate/{ledger_transaction_id}", summary="Validate a match")
async def validate_match(
    bank_line_id: str,
    ledger_transaction_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.validate_match(bank_line_id, ledger_transaction_id, user_id=user_id))


@router.get("/bank-lines/{bank_line_id}/matches", summary="List reconciliations of a bank line")
async def list_matches(
    bank_line_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return {"reconciliations": unwrap(await service.list_reconciliations(bank_line_id, user_id=user_id))}


@router.post("/matches", status_code=201, summary="Confirm a match")
async def create_match(
    request: CreateMatchRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Confirm a match between a bank line and a ledger transaction.

    Requires internal API key authentication.
    """
    service = ReconciliationService(db, config)
    return unwrap(await service.create_match(
        request.bank_line_id,
        request.ledger_transaction_id,
        user_id,
        CreateMatchOptions(
            match_amount=request.match_amount,
            match_type=request.match_type,
            notes=request.notes,
            force=request.force,
        ),
    ))


@router.delete("/matches/{reconciliation_id}", summary="Reverse a match")
async def remove_match(
    reconciliation_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.remove_match(reconciliation_id, user_id))


@router.post("/bank-lines/{bank_line_id}/unreconcile", summary="Reverse all matches of a bank line")
async def unreconcile_bank_line(
    bank_line_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.unreconcile_bank_line(bank_line_id, user_id))


@router.post("/bank-lines/{bank_line_id}/exclude", summary="Exclude a bank line")
async def exclude_bank_line(
    bank_line_id: str,
    request: ExclusionRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.exclude_bank_line(bank_line_id, user_id, notes=request.notes))


@router.post("/bank-lines/{bank_line_id}/include", summary="Re-include a bank line")
async def include_bank_line(
    bank_line_id: str,
    request: ExclusionRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.include_bank_line(bank_line_id, user_id, notes=request.notes))


@router.post("/suggestions", status_code=201, summary="Store a pending suggestion")
async def suggest_match(
    request: SuggestMatchRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.suggest_match(
        request.bank_line_id,
        request.ledger_transaction_id,
        user_id=user_id,
        confidence=request.confidence,
        notes=request.notes,
    ))


@router.post("/suggestions/{reconciliation_id}/confirm", summary="Confirm a suggestion")
async def confirm_suggestion(
    reconciliation_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.confirm_suggestion(reconciliation_id, user_id))


@router.post("/suggestions/{reconciliation_id}/reject", summary="Reject a suggestion")
async def reject_suggestion(
    reconciliation_id: str,
    request: RejectSuggestionRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationService(db, config)
    return unwrap(await service.reject_suggestion(reconciliation_id, user_id, reason=request.reason))


@router.post("/accounts/{account_id}/auto-reconcile", summary="Run auto-reconciliation")
async def auto_reconcile(
    account_id: str,
    request: AutoReconcileRequest,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    config: MatchingConfig = Depends(get_matching_config),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Confirm every unreconciled bank line whose best candidate scores at
    least min_confidence. With dry_run the matches are only reported.
    """
    runner = AutoReconciler(db, config)
    return unwrap(await runner.auto_reconcile(
        account_id,
        user_id,
        AutoReconcileOptions(
            min_confidence=request.min_confidence,
            dry_run=request.dry_run,
            max_items=request.max_items,
        ),
    ))


@router.get("/accounts/{account_id}/summary", summary="Reconciliation summary")
async def get_status_summary(
    account_id: str,
    date_range: Optional[DateRange] = Depends(date_range_params),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_status_summary(account_id, date_range, user_id=user_id))


@router.get("/accounts/{account_id}/balances", summary="Bank vs book balances")
async def get_balances(
    account_id: str,
    date_range: Optional[DateRange] = Depends(date_range_params),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.calculate_balances(account_id, date_range, user_id=user_id))


@router.get("/accounts/{account_id}/unreconciled", summary="Unreconciled totals")
async def get_unreconciled(
    account_id: str,
    date_range: Optional[DateRange] = Depends(date_range_params),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_unreconciled_totals(account_id, date_range, user_id=user_id))


@router.get("/accounts/{account_id}/last-reconciliation", summary="Last reconciliation activity")
async def get_last_reconciliation(
    account_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_last_reconciliation_info(account_id, user_id=user_id))


@router.get("/accounts/{account_id}/full-status", summary="Full reconciliation status")
async def get_full_status(
    account_id: str,
    date_range: Optional[DateRange] = Depends(date_range_params),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_full_status(account_id, date_range, user_id=user_id))


@router.get("/accounts/{account_id}/audit-log", summary="Recent audit entries")
async def get_audit_log(
    account_id: str,
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_audit_log(account_id, user_id=user_id, limit=limit))


@router.get("/users/{owner_id}/status", summary="Status across a user's accounts")
async def get_status_by_user(
    owner_id: str,
    user_id: str = Depends(get_acting_user),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    if owner_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot view another user's reconciliation status")
    service = ReconciliationStatusService(db)
    return unwrap(await service.get_status_by_user(owner_id))
