"""
Result types for reconciliation operations.

Domain failures (missing records, incompatible types, duplicates) are
returned as Err values rather than raised, so callers such as the batch
runner can collect them per item. Storage failures are converted to a
generic STORAGE_FAILURE at the service boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class ReconciliationErrorCode(str, Enum):
    """Error codes surfaced to callers of the reconciliation engine."""
    NOT_FOUND = "NOT_FOUND"
    ALREADY_RECONCILED = "ALREADY_RECONCILED"
    INCOMPATIBLE_TYPES = "INCOMPATIBLE_TYPES"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"  # Warning only
    ACCESS_DENIED = "ACCESS_DENIED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    INVALID_INPUT = "INVALID_INPUT"
    STORAGE_FAILURE = "STORAGE_FAILURE"


@dataclass
class ReconciliationError:
    code: ReconciliationErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class Ok(Generic[T]):
    value: T
    success: bool = field(default=True, init=False)

    def to_dict(self) -> Dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {"success": True, "data": value}


@dataclass
class Err:
    error: ReconciliationError
    success: bool = field(default=False, init=False)

    @property
    def code(self) -> ReconciliationErrorCode:
        return self.error.code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.error.to_dict()}


Result = Union[Ok[T], Err]


def err(code: ReconciliationErrorCode, message: str, **details: Any) -> Err:
    """Shorthand for building an Err."""
    return Err(ReconciliationError(code=code, message=message, details=details))


def storage_failure() -> Err:
    return err(ReconciliationErrorCode.STORAGE_FAILURE, "A storage error occurred; no changes were saved")


@dataclass
class ValidationIssue:
    code: ReconciliationErrorCode
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message}


@dataclass
class MatchValidation:
    """Outcome of validate_match: hard errors block a match, warnings do not."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def first_error(self) -> Optional[ValidationIssue]:
        return self.errors[0] if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }
