"""
RECONCILIATION CALCULATOR

Pure, side-effect-free functions used by the lifecycle handlers:
- allocation_balance: active allocations vs. invoice billable remainder
- po_capacity: line item remaining capacity and overage for a proposed amount
- budget_delta: next value of a budget line field, zero baseline, floored at zero
- draw_total: draw total from draw allocations + change-order billings

Signed amount policy:
- Credits (negative invoice amounts) are allowed
- Every allocation carries the invoice's sign; zero allocations are rejected
- Credits never produce PO overage
- Aggregates never go below zero
"""

from decimal import Decimal
from typing import Dict, Any, List, Optional, Iterable, Tuple
from dataclasses import dataclass, field

from .financial_precision import (
    to_decimal,
    to_float,
    round_financial,
    safe_add,
    safe_subtract,
    sum_amounts,
    floor_zero,
    sign_of,
    EPSILON,
    ZERO,
)

BUDGET_FIELDS = ("budgeted_amount", "committed_amount", "billed_amount", "paid_amount")


@dataclass
class AllocationBalance:
    balanced: bool
    difference: float
    billable_remaining: float
    allocated_total: float


@dataclass
class PoCapacity:
    remaining: float
    overage: float
    line_amount: float = 0.0
    invoiced_amount: float = 0.0
    proposed_amount: float = 0.0


@dataclass
class BillingSplit:
    """One allocation's share of a (possibly partial) draw billing"""
    allocation: Dict[str, Any]
    amount: Decimal
    remainder: Decimal = field(default=ZERO)


# =============================================================================
# ALLOCATIONS
# =============================================================================

def billable_remaining(invoice: Dict[str, Any]) -> Decimal:
    """Invoice amount not yet billed in a draw"""
    return safe_subtract(invoice.get("amount"), invoice.get("billed_amount"))


def allocation_balance(invoice: Dict[str, Any], allocations: Iterable[Dict[str, Any]]) -> AllocationBalance:
    remaining = billable_remaining(invoice)
    allocated = sum_amounts(allocations)
    difference = round_financial(remaining - allocated)
    return AllocationBalance(
        balanced=abs(difference) <= EPSILON,
        difference=to_float(difference),
        billable_remaining=to_float(remaining),
        allocated_total=to_float(allocated),
    )


def validate_allocations(invoice: Dict[str, Any], allocations: List[Dict[str, Any]]) -> List[str]:
    """Shape and sign checks for a proposed allocation list"""
    problems = []
    invoice_sign = sign_of(invoice.get("amount"))

    for index, allocation in enumerate(allocations, start=1):
        if not allocation.get("cost_code_id"):
            problems.append(f"Allocation {index}: cost_code_id is required")
        amount = to_decimal(allocation.get("amount"))
        if abs(amount) < EPSILON:
            problems.append(f"Allocation {index}: amount must be non-zero")
        elif sign_of(amount) != invoice_sign:
            kind = "credit" if invoice_sign < 0 else "positive"
            problems.append(f"Allocation {index}: amount must be {kind} to match the invoice")

    return problems


def aggregate_by_line_item(allocations: Iterable[Dict[str, Any]]) -> Dict[str, Decimal]:
    """Total proposed amount per PO line item (allocations without a line are skipped)"""
    totals: Dict[str, Decimal] = {}
    for allocation in allocations:
        line_id = allocation.get("po_line_item_id")
        if not line_id:
            continue
        totals[line_id] = totals.get(line_id, ZERO) + to_decimal(allocation.get("amount"))
    return totals


def aggregate_by_cost_code(allocations: Iterable[Dict[str, Any]]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for allocation in allocations:
        code = allocation["cost_code_id"]
        totals[code] = totals.get(code, ZERO) + to_decimal(allocation.get("amount"))
    return totals


# =============================================================================
# PURCHASE ORDERS
# =============================================================================

def po_capacity(po_line_item: Dict[str, Any], proposed_amount) -> PoCapacity:
    """
    overage = max(0, invoiced + proposed - amount)

    Overage never fails the calculation; the orchestrator decides whether an
    override is required.
    """
    line_amount = to_decimal(po_line_item.get("amount"))
    invoiced = to_decimal(po_line_item.get("invoiced_amount"))
    proposed = to_decimal(proposed_amount)

    remaining = safe_subtract(line_amount, invoiced)
    if proposed <= ZERO:
        overage = ZERO
    else:
        overage = max(ZERO, invoiced + proposed - line_amount)

    return PoCapacity(
        remaining=to_float(max(ZERO, remaining)),
        overage=to_float(overage),
        line_amount=to_float(line_amount),
        invoiced_amount=to_float(invoiced),
        proposed_amount=to_float(proposed),
    )


# =============================================================================
# BUDGET
# =============================================================================

def budget_delta(budget_line: Optional[Dict[str, Any]], field_name: str, amount_delta) -> Decimal:
    """
    New value of a budget line field after applying amount_delta.

    A missing line is treated as a zero baseline. Result floors at zero.
    """
    if field_name not in BUDGET_FIELDS:
        raise ValueError(f"Unknown budget field '{field_name}'. Must be one of {BUDGET_FIELDS}")
    current = to_decimal((budget_line or {}).get(field_name))
    return round_financial(floor_zero(current + to_decimal(amount_delta)))


# =============================================================================
# DRAWS
# =============================================================================

def draw_total(draw_allocations: Iterable[Dict[str, Any]], change_order_billings: Iterable[Dict[str, Any]]) -> float:
    """Always recomputed from source rows"""
    return to_float(safe_add(sum_amounts(draw_allocations), sum_amounts(change_order_billings)))


def split_billing(allocations: List[Dict[str, Any]], billed_amount) -> List[BillingSplit]:
    """
    Prorate a partial billing across active allocations.

    Largest remainder in cents: each allocation first gets the floor of
    amount * (billed / total), then the leftover cents go one at a time to the
    largest fractional parts. A share never exceeds its allocation and always
    carries the allocation's sign, so the shares sum exactly to the billing.
    """
    total = abs(sum_amounts(allocations))
    billed = round_financial(billed_amount)
    sign = -1 if billed < ZERO else 1

    billed_cents = int(abs(billed) * 100)
    caps, shares, fractions = [], [], []
    for allocation in allocations:
        cap = int(round_financial(abs(to_decimal(allocation.get("amount")))) * 100)
        exact = Decimal(cap) * billed_cents / (total * 100) if total != ZERO else ZERO
        floor = min(int(exact), cap)
        caps.append(cap)
        shares.append(floor)
        fractions.append(exact - floor)

    leftover = billed_cents - sum(shares)
    order = sorted(range(len(allocations)), key=lambda i: (-fractions[i], i))
    while leftover > 0:
        progressed = False
        for i in order:
            if leftover == 0:
                break
            if shares[i] < caps[i]:
                shares[i] += 1
                leftover -= 1
                progressed = True
        if not progressed:
            break

    splits: List[BillingSplit] = []
    for allocation, cents in zip(allocations, shares):
        amount = to_decimal(allocation.get("amount"))
        share = Decimal(cents * sign) / 100
        splits.append(BillingSplit(
            allocation=allocation,
            amount=round_financial(share),
            remainder=round_financial(amount - share),
        ))

    return splits


def merge_allocations(active: List[Dict[str, Any]], returned: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Fold draw allocation amounts back into active allocations keyed by
    (cost_code_id, po_line_item_id). Returns the full merged list.
    """
    merged: Dict[Tuple[str, Optional[str]], Dict[str, Any]] = {}

    for row in list(active) + list(returned):
        key = (row["cost_code_id"], row.get("po_line_item_id"))
        target = merged.get(key)
        if target is None:
            merged[key] = {
                "cost_code_id": row["cost_code_id"],
                "po_line_item_id": row.get("po_line_item_id"),
                "amount": to_float(row.get("amount")),
                "notes": row.get("notes"),
            }
        else:
            target["amount"] = to_float(safe_add(target["amount"], row.get("amount")))

    return [row for row in merged.values() if abs(to_decimal(row["amount"])) >= EPSILON]
