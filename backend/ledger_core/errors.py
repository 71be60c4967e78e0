"""
LEDGER ERROR TAXONOMY

Every hard failure raised by the engine is a LedgerError carrying:
- code: one of the ErrorCode values
- message: human readable reason
- details: structured payload for the caller (amounts, holders, versions)

HTTP status and retry hints are attached per code so the route layer can render
errors without knowing engine internals.

PO_OVERAGE is NOT raised. It is a soft block returned as a PoOverage result so the
caller can re-request the same transition with an override.
"""

from typing import Dict, Any, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TRANSITION_NOT_ALLOWED = "TRANSITION_NOT_ALLOWED"
    LOCKED = "LOCKED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    PO_OVERAGE = "PO_OVERAGE"
    NOT_FOUND = "NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNDO_NOT_FOUND = "UNDO_NOT_FOUND"


# code -> (http status, retryable)
ERROR_POLICY: Dict[ErrorCode, tuple] = {
    ErrorCode.VALIDATION_FAILED: (400, False),
    ErrorCode.TRANSITION_NOT_ALLOWED: (409, False),
    ErrorCode.LOCKED: (423, True),
    ErrorCode.VERSION_CONFLICT: (409, False),
    ErrorCode.PO_OVERAGE: (409, False),
    ErrorCode.NOT_FOUND: (404, False),
    ErrorCode.DATABASE_ERROR: (500, True),
    ErrorCode.UNDO_NOT_FOUND: (404, False),
}


# =============================================================================
# EXCEPTIONS
# =============================================================================

class LedgerError(Exception):
    """Base exception for every engine failure surfaced to callers"""
    code: ErrorCode = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return ERROR_POLICY[self.code][0]

    @property
    def retryable(self) -> bool:
        return ERROR_POLICY[self.code][1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationFailedError(LedgerError):
    """Malformed input or unmet precondition"""
    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, errors: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if errors:
            details["errors"] = errors
        super().__init__(message, details)


class TransitionNotAllowedError(LedgerError):
    """Raised when a status edge is not in the transition graph"""
    code = ErrorCode.TRANSITION_NOT_ALLOWED

    def __init__(self, entity_type: str, from_status: str, to_status: str, reason: str):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(reason, {
            "entity_type": entity_type,
            "from_status": from_status,
            "to_status": to_status,
        })


class LockedError(LedgerError):
    """Entity is being edited by another actor"""
    code = ErrorCode.LOCKED

    def __init__(self, entity_type: str, entity_id: str, locked_by: Optional[str], expires_at=None, message: Optional[str] = None):
        self.locked_by = locked_by
        super().__init__(
            message or f"{entity_type} {entity_id} is being edited by {locked_by}",
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "locked_by": locked_by,
                "expires_at": expires_at.isoformat() if expires_at else None,
            }
        )


class VersionConflictError(LedgerError):
    """Stale optimistic-concurrency token"""
    code = ErrorCode.VERSION_CONFLICT

    def __init__(self, entity_type: str, entity_id: str, expected_version: Optional[int], current_version: Optional[int]):
        super().__init__(
            f"{entity_type} {entity_id} was modified by another user. Please refresh and try again.",
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "current_version": current_version,
            }
        )


class NotFoundError(LedgerError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message, {"resource": resource, "id": resource_id})


class DatabaseError(LedgerError):
    """Ledger Store failure"""
    code = ErrorCode.DATABASE_ERROR


class UndoNotFoundError(LedgerError):
    """Undo entry expired, consumed or absent"""
    code = ErrorCode.UNDO_NOT_FOUND

    def __init__(self, entry_id: str, reason: str = "Undo entry not found or expired"):
        super().__init__(reason, {"entry_id": entry_id})


# =============================================================================
# SOFT BLOCK
# =============================================================================

class PoOverage:
    """
    Structured soft-block result.

    Returned (never raised) when approving would push one or more PO line items
    past their amount and no override was supplied.
    """
    code = ErrorCode.PO_OVERAGE

    def __init__(self, lines: List[Dict[str, Any]]):
        self.lines = lines

    @property
    def overage_amount(self) -> float:
        return round(sum(line["overage_amount"] for line in self.lines), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": "Allocation exceeds PO line item remaining capacity. Re-submit with override_po_overage to proceed.",
            "overage_amount": self.overage_amount,
            "lines": self.lines,
        }
