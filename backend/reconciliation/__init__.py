"""
Bank Reconciliation Engine Module

Matches imported bank statement lines against ledger transactions:
- Multi-factor confidence scoring with a type-compatibility gate
- Candidate search and ranking
- Confirm / reverse state machine with split matches
- Pending suggestions and line exclusion
- Batch auto-reconciliation with dry-run
- Balance and progress reporting
- Audit trail for all operations
"""

from reconciliation.results import (
    ReconciliationErrorCode,
    ReconciliationError,
    MatchValidation,
    Ok,
    Err,
)
from reconciliation.matching_rules.bank_rules import (
    BankMatchingRules,
    MatchingConfig,
    MatchScore,
    MatchCandidate,
    are_types_compatible,
)
from reconciliation.stores import DateRange
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    CreateMatchOptions,
)
from reconciliation.services.auto_reconciler import (
    AutoReconciler,
    AutoReconcileOptions,
    AutoReconcileReport,
)
from reconciliation.services.status_service import (
    ReconciliationStatusService,
    calculate_progress,
)
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Results
    'ReconciliationErrorCode',
    'ReconciliationError',
    'MatchValidation',
    'Ok',
    'Err',
    # Matching Rules
    'BankMatchingRules',
    'MatchingConfig',
    'MatchScore',
    'MatchCandidate',
    'are_types_compatible',
    # Stores
    'DateRange',
    # Services
    'ReconciliationService',
    'CreateMatchOptions',
    'AutoReconciler',
    'AutoReconcileOptions',
    'AutoReconcileReport',
    'ReconciliationStatusService',
    'calculate_progress',
    # Router
    'reconciliation_router'
]
