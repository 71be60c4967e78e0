"""
INVOICE & DRAW TRANSITION VALIDATOR

Encodes the legal status graphs as enum-indexed tables and the preconditions
for entering each state.

Invoice graph:
    received -> needs_approval -> approved -> in_draw -> paid
    approved -> needs_approval          (unapprove)
    in_draw  -> approved                (pulled from a draft draw)
    received | needs_approval -> denied
    denied   -> received                (resubmit)
    needs_approval | approved -> paid   (close-out write-off)
    paid     -> needs_approval          (only after an explicit unarchive)

Draw graph:
    draft -> submitted -> funded
    submitted -> draft                  (unsubmit)
    funded is terminal

Usage:
    check = can_transition(InvoiceStatus.APPROVED, InvoiceStatus.IN_DRAW)
    if not check.valid:
        ...
"""

from typing import Dict, FrozenSet, Optional, Union, List, Any
from dataclasses import dataclass
from enum import Enum
import logging

from .errors import TransitionNotAllowedError, ValidationFailedError

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS ENUMS
# =============================================================================

class EntityType(str, Enum):
    INVOICE = "invoice"
    DRAW = "draw"


class InvoiceStatus(str, Enum):
    RECEIVED = "received"
    NEEDS_APPROVAL = "needs_approval"
    APPROVED = "approved"
    IN_DRAW = "in_draw"
    PAID = "paid"
    DENIED = "denied"


class DrawStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    FUNDED = "funded"


Status = Union[InvoiceStatus, DrawStatus]


# =============================================================================
# TRANSITION TABLES
# =============================================================================

INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.RECEIVED: frozenset({InvoiceStatus.NEEDS_APPROVAL, InvoiceStatus.DENIED}),
    InvoiceStatus.NEEDS_APPROVAL: frozenset({InvoiceStatus.APPROVED, InvoiceStatus.DENIED, InvoiceStatus.PAID}),
    InvoiceStatus.APPROVED: frozenset({InvoiceStatus.IN_DRAW, InvoiceStatus.NEEDS_APPROVAL, InvoiceStatus.PAID}),
    InvoiceStatus.IN_DRAW: frozenset({InvoiceStatus.PAID, InvoiceStatus.APPROVED}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.NEEDS_APPROVAL}),
    InvoiceStatus.DENIED: frozenset({InvoiceStatus.RECEIVED}),
}

DRAW_TRANSITIONS: Dict[DrawStatus, FrozenSet[DrawStatus]] = {
    DrawStatus.DRAFT: frozenset({DrawStatus.SUBMITTED}),
    DrawStatus.SUBMITTED: frozenset({DrawStatus.FUNDED, DrawStatus.DRAFT}),
    DrawStatus.FUNDED: frozenset(),
}

# Statuses in which an invoice carries billed PO/budget effects
BILLABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.APPROVED, InvoiceStatus.IN_DRAW, InvoiceStatus.PAID})

# Statuses in which allocations must balance to the billable remainder
BALANCED_INVOICE_STATUSES = frozenset({InvoiceStatus.APPROVED})

# Statuses in which descriptive invoice fields may not change
ARCHIVED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.DENIED})


@dataclass
class TransitionCheck:
    """Result of a transition legality check"""
    valid: bool
    reason: Optional[str] = None


# =============================================================================
# VALIDATION
# =============================================================================

def parse_status(entity_type: EntityType, value: Any) -> Status:
    """Coerce a raw status string to the entity's enum"""
    enum_cls = InvoiceStatus if entity_type == EntityType.INVOICE else DrawStatus
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [s.value for s in enum_cls]
        raise ValidationFailedError(
            f"Unknown {entity_type.value} status '{value}'",
            details={"allowed": allowed}
        )


def allowed_targets(current: Status) -> List[str]:
    table = INVOICE_TRANSITIONS if isinstance(current, InvoiceStatus) else DRAW_TRANSITIONS
    return sorted(s.value for s in table[current])


def can_transition(current: Status, requested: Status) -> TransitionCheck:
    """
    Check a status edge against the graph.

    Pure function: no I/O, no side effects.
    """
    if isinstance(current, InvoiceStatus) and isinstance(requested, InvoiceStatus):
        table = INVOICE_TRANSITIONS
    elif isinstance(current, DrawStatus) and isinstance(requested, DrawStatus):
        table = DRAW_TRANSITIONS
    else:
        return TransitionCheck(False, f"Cannot compare statuses '{current}' and '{requested}'")

    if current == requested:
        return TransitionCheck(False, f"Already in status '{current.value}'")

    targets = table[current]
    if requested in targets:
        return TransitionCheck(True)

    if not targets:
        return TransitionCheck(False, f"Status '{current.value}' is terminal")

    return TransitionCheck(
        False,
        f"Cannot transition from '{current.value}' to '{requested.value}'. "
        f"Allowed: {', '.join(allowed_targets(current))}"
    )


def validate_transition(entity_type: EntityType, current: Status, requested: Status) -> None:
    """Raise TransitionNotAllowedError if the edge is illegal"""
    check = can_transition(current, requested)
    if not check.valid:
        logger.info(
            f"[TRANSITION] Rejected {entity_type.value} {current.value} -> {requested.value}: {check.reason}"
        )
        raise TransitionNotAllowedError(entity_type.value, current.value, requested.value, check.reason)


# =============================================================================
# PRECONDITIONS
# =============================================================================

def invoice_preconditions(invoice: Dict[str, Any], requested: InvoiceStatus, payload: Dict[str, Any]) -> List[str]:
    """
    Field-level requirements for entering a status.

    Returns a list of problems; empty means satisfied. Checks needing the
    Ledger Store (draw state, allocation balance) live in the lifecycle handlers.
    """
    problems = []
    current = InvoiceStatus(invoice["status"])

    if requested == InvoiceStatus.NEEDS_APPROVAL:
        if not invoice.get("job_id"):
            problems.append("job_id is required before coding")
        if not invoice.get("vendor_id"):
            problems.append("vendor_id is required before coding")
        if current == InvoiceStatus.PAID and invoice.get("archived", True):
            problems.append("Paid invoices must be unarchived before a status change")

    elif requested == InvoiceStatus.DENIED:
        if not (payload.get("reason") or "").strip():
            problems.append("A denial reason is required")

    elif requested == InvoiceStatus.IN_DRAW:
        if not payload.get("draw_id"):
            problems.append("draw_id is required to add an invoice to a draw")

    elif requested == InvoiceStatus.PAID and current == InvoiceStatus.IN_DRAW:
        problems.append("In-draw invoices are paid by funding their draw")

    return problems


def draw_preconditions(draw: Dict[str, Any], requested: DrawStatus, payload: Dict[str, Any]) -> List[str]:
    problems = []
    if requested == DrawStatus.DRAFT and not (payload.get("reason") or "").strip():
        problems.append("A reason is required to unsubmit a draw")
    elif requested == DrawStatus.FUNDED:
        if draw.get("status") == DrawStatus.DRAFT.value:
            problems.append("Cannot fund a draft draw. Submit first.")
        elif draw.get("status") == DrawStatus.FUNDED.value:
            problems.append("Draw has already been funded")
    return problems
