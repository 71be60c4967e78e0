"""
INVOICE LIFECYCLE HANDLERS

Each status edge of the invoice graph is registered with a handler:
    prepare(ctx, invoice)  - validation and reconciliation reads, no writes
    apply(ctx, invoice)    - the writes, inside the operation's transaction

Ledger effects:
- Approval bills every active allocation: PO line item invoiced_amount and
  budget billed_amount grow by the allocation amount
- Unapprove, close-out of an approved invoice and soft-delete reverse them
- Adding to a draw moves amounts from active allocations into draw allocations
  (optionally a partial billing); removing merges them back
- Every decrement floors at zero (see LedgerStore)

Invariant kept by every handler:
    sum(active allocations) == amount - billed_amount   (within 0.01)
for invoices in a balanced status.
"""

from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple
import re
import logging

from .commitments import PO_VOID
from .context import TransitionContext, LifecycleHandler
from .errors import ValidationFailedError, VersionConflictError, PoOverage, TransitionNotAllowedError
from .financial_precision import (
    to_decimal,
    to_float,
    safe_add,
    safe_subtract,
    sum_amounts,
    sign_of,
    is_zero,
    amounts_equal,
    EPSILON,
)
from .ledger_store import LedgerStore, new_id
from .locking import LockManager
from .reconciliation import (
    allocation_balance,
    validate_allocations,
    aggregate_by_line_item,
    billable_remaining,
    po_capacity,
    split_billing,
    merge_allocations,
)
from .state_machine import (
    EntityType,
    InvoiceStatus,
    DrawStatus,
    ARCHIVED_INVOICE_STATUSES,
    BILLABLE_INVOICE_STATUSES,
)

logger = logging.getLogger(__name__)

MAX_INVOICE_AMOUNT = to_decimal("10000000")
INVOICE_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9\-_#\s.]+$")
INVOICE_NUMBER_MAX_LENGTH = 100

EDITABLE_FIELDS = (
    "job_id", "vendor_id", "po_id", "invoice_number", "invoice_date",
    "due_date", "amount", "notes", "document_url",
)


# =============================================================================
# FIELD VALIDATION
# =============================================================================

def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def validate_invoice_fields(data: Dict[str, Any], partial: bool = False) -> List[str]:
    """
    Field rules for received or edited invoices.

    partial=True validates only the keys present (edits).
    """
    errors = []

    if not partial or "amount" in data:
        if data.get("amount") is None:
            errors.append("amount is required")
        else:
            try:
                amount = to_decimal(data["amount"])
                if is_zero(amount):
                    errors.append("amount cannot be zero")
                elif abs(amount) > MAX_INVOICE_AMOUNT:
                    errors.append("amount exceeds the 10,000,000 limit")
            except Exception:
                errors.append("amount must be a number")

    if not partial or "invoice_number" in data:
        number = (data.get("invoice_number") or "").strip()
        if not number:
            errors.append("invoice_number is required")
        elif len(number) > INVOICE_NUMBER_MAX_LENGTH:
            errors.append(f"invoice_number must be at most {INVOICE_NUMBER_MAX_LENGTH} characters")
        elif not INVOICE_NUMBER_PATTERN.match(number):
            errors.append("invoice_number contains invalid characters")

    if not partial and not data.get("vendor_id"):
        errors.append("vendor_id is required")

    dates = {}
    for key in ("invoice_date", "due_date"):
        if key in data:
            try:
                dates[key] = _parse_date(data[key])
            except ValueError:
                errors.append(f"{key} is not a valid date")
    if dates.get("invoice_date") and dates.get("due_date") and dates["due_date"] < dates["invoice_date"]:
        errors.append("due_date cannot be before invoice_date")

    return errors


def normalize_allocations(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for allocation in raw or []:
        rows.append({
            "cost_code_id": allocation.get("cost_code_id"),
            "po_line_item_id": allocation.get("po_line_item_id") or None,
            "amount": allocation.get("amount"),
            "notes": allocation.get("notes"),
        })
    return rows


class InvoiceLifecycle:
    """Handlers for every invoice operation that goes through the orchestrator"""

    def __init__(self, store: LedgerStore, locks: LockManager):
        self.store = store
        self.locks = locks

    def transition_handlers(self) -> Dict[Tuple[InvoiceStatus, InvoiceStatus], LifecycleHandler]:
        S = InvoiceStatus
        return {
            (S.RECEIVED, S.NEEDS_APPROVAL): LifecycleHandler("submit_for_approval", self._apply_submit, self._prepare_submit),
            (S.RECEIVED, S.DENIED): LifecycleHandler("deny", self._apply_deny),
            (S.NEEDS_APPROVAL, S.DENIED): LifecycleHandler("deny", self._apply_deny),
            (S.NEEDS_APPROVAL, S.APPROVED): LifecycleHandler("approve", self._apply_approve, self._prepare_approve),
            (S.NEEDS_APPROVAL, S.PAID): LifecycleHandler("close_out", self._apply_close_out, self._prepare_close_out),
            (S.APPROVED, S.NEEDS_APPROVAL): LifecycleHandler("unapprove", self._apply_unapprove),
            (S.APPROVED, S.IN_DRAW): LifecycleHandler("add_to_draw", self._apply_add_to_draw, self._prepare_add_to_draw),
            (S.APPROVED, S.PAID): LifecycleHandler("close_out", self._apply_close_out, self._prepare_close_out),
            (S.IN_DRAW, S.APPROVED): LifecycleHandler("remove_from_draw", self._apply_remove_from_draw, self._prepare_remove_from_draw),
            (S.IN_DRAW, S.PAID): LifecycleHandler("mark_paid", self._apply_mark_paid),
            (S.PAID, S.NEEDS_APPROVAL): LifecycleHandler("reopen", self._apply_reopen),
            (S.DENIED, S.RECEIVED): LifecycleHandler("resubmit", self._apply_resubmit),
        }

    # =========================================================================
    # SHARED HELPERS
    # =========================================================================

    async def save(self, ctx: TransitionContext, invoice: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        updated = dict(invoice)
        updated.update(changes)
        return await self.store.replace_versioned("invoices", updated, invoice["version"], session=ctx.session)

    async def require_open_po(self, ctx: TransitionContext, po_id: Optional[str]):
        """A void purchase order no longer carries commitment to bill against"""
        po = await self.store.purchase_orders.find_one({"_id": po_id}, session=ctx.session)
        if not po:
            raise ValidationFailedError(f"Purchase order {po_id} not found")
        if po.get("status") == PO_VOID:
            raise ValidationFailedError(f"Purchase order {po.get('po_number', po_id)} is void")

    async def resolve_line_item(self, ctx: TransitionContext, invoice: Dict[str, Any], allocation: Dict[str, Any]) -> Optional[str]:
        """PO line item an allocation bills against: explicit id, else the PO's line for the cost code"""
        line_id = allocation.get("po_line_item_id")
        if line_id:
            line = await self.store.po_line_items.find_one({"_id": line_id}, session=ctx.session)
            if not line:
                raise ValidationFailedError(f"PO line item {line_id} not found")
            if invoice.get("po_id") and line.get("po_id") != invoice["po_id"]:
                raise ValidationFailedError(f"PO line item {line_id} does not belong to the invoice's purchase order")
            if not invoice.get("po_id"):
                await self.require_open_po(ctx, line.get("po_id"))
            return line_id

        if invoice.get("po_id") and allocation.get("cost_code_id"):
            line = await self.store.po_line_items.find_one(
                {"po_id": invoice["po_id"], "cost_code_id": allocation["cost_code_id"]},
                session=ctx.session
            )
            if line:
                return line["_id"]
        return None

    async def bill(self, ctx: TransitionContext, invoice: Dict[str, Any], allocations: List[Dict[str, Any]], direction: int):
        """
        Apply (+1) or reverse (-1) the PO and budget effects of allocations.
        Read-then-write per row; reversals floor at zero.
        """
        for allocation in allocations:
            amount = to_decimal(allocation["amount"]) * direction
            if allocation.get("po_line_item_id"):
                ctx.record(await self.store.adjust_po_line(allocation["po_line_item_id"], amount, session=ctx.session))
            ctx.record(await self.store.adjust_budget(
                invoice["job_id"], allocation["cost_code_id"], "billed_amount", amount, session=ctx.session
            ))

    async def check_allocation_rows(self, ctx: TransitionContext, invoice: Dict[str, Any], rows: List[Dict[str, Any]]):
        """Shape, sign and PO-line checks; resolves po_line_item_id in place"""
        problems = validate_allocations(invoice, rows)
        if problems:
            raise ValidationFailedError("Invalid allocations", errors=problems)
        if invoice.get("po_id"):
            await self.require_open_po(ctx, invoice["po_id"])
        for row in rows:
            row["po_line_item_id"] = await self.resolve_line_item(ctx, invoice, row)

    def require_balanced(self, invoice: Dict[str, Any], allocations: List[Dict[str, Any]]):
        balance = allocation_balance(invoice, allocations)
        if not balance.balanced:
            raise ValidationFailedError(
                f"Allocations total {balance.allocated_total:.2f} but {balance.billable_remaining:.2f} is billable",
                details={
                    "difference": balance.difference,
                    "billable_remaining": balance.billable_remaining,
                    "allocated_total": balance.allocated_total,
                }
            )

    async def funded_draw_ids(self, ctx: TransitionContext, invoice_id: str) -> List[str]:
        rows = await self.store.list_draw_allocations(invoice_id=invoice_id, session=ctx.session)
        draw_ids = sorted({row["draw_id"] for row in rows})
        if not draw_ids:
            return []
        funded = await self.store.draws.find(
            {"_id": {"$in": draw_ids}, "status": DrawStatus.FUNDED.value},
            session=ctx.session
        ).to_list(length=None)
        return [d["_id"] for d in funded]

    # =========================================================================
    # RECEIVED -> NEEDS_APPROVAL
    # =========================================================================

    async def _prepare_submit(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        if ctx.payload.get("allocations") is not None:
            rows = normalize_allocations(ctx.payload["allocations"])
            await self.check_allocation_rows(ctx, invoice, rows)
            ctx.scratch["allocations"] = rows
        return None

    async def _apply_submit(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        if "allocations" in ctx.scratch:
            await self.store.replace_allocations(invoice, ctx.scratch["allocations"], session=ctx.session)
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.NEEDS_APPROVAL.value,
            "coded_at": ctx.now,
            "coded_by": ctx.actor,
        })

    # =========================================================================
    # NEEDS_APPROVAL -> APPROVED
    # =========================================================================

    async def _prepare_approve(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Optional[PoOverage]:
        existing = await self.store.list_allocations(invoice["_id"], session=ctx.session)
        supplied = ctx.payload.get("allocations")

        if supplied is not None:
            rows = normalize_allocations(supplied)
        else:
            rows = [dict(row) for row in existing]

        if not rows:
            raise ValidationFailedError("Invoice must be coded to at least one cost code before approval")

        await self.check_allocation_rows(ctx, invoice, rows)
        self.require_balanced(invoice, rows)

        overage_lines = []
        for line_id, proposed in aggregate_by_line_item(rows).items():
            line = await self.store.get_po_line_item(line_id, session=ctx.session)
            capacity = po_capacity(line, proposed)
            if capacity.overage > 0:
                overage_lines.append({
                    "po_line_item_id": line_id,
                    "cost_code_id": line.get("cost_code_id"),
                    "line_amount": capacity.line_amount,
                    "invoiced_amount": capacity.invoiced_amount,
                    "proposed_amount": capacity.proposed_amount,
                    "remaining_amount": capacity.remaining,
                    "overage_amount": capacity.overage,
                })

        if overage_lines and not ctx.payload.get("override_po_overage"):
            logger.info(f"[TRANSITION] Approval of invoice {invoice['_id']} soft-blocked by PO overage")
            return PoOverage(overage_lines)

        ctx.scratch.update({
            "allocations": rows,
            "replace": supplied is not None,
            "overage_lines": overage_lines,
        })
        return None

    async def _apply_approve(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.store.replace_allocations(invoice, ctx.scratch["allocations"], session=ctx.session)

        await self.bill(ctx, invoice, rows, +1)

        overage_lines = ctx.scratch["overage_lines"]
        if overage_lines:
            overage = PoOverage(overage_lines).overage_amount
            ctx.warn(f"PO overage of {overage:.2f} approved with override by {ctx.actor}")

        ctx.request_stamp("APPROVED")
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.APPROVED.value,
            "approved_at": ctx.now,
            "approved_by": ctx.actor,
            "po_override": bool(overage_lines),
        })

    # =========================================================================
    # APPROVED -> NEEDS_APPROVAL
    # =========================================================================

    async def _apply_unapprove(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        allocations = await self.store.list_allocations(invoice["_id"], session=ctx.session)
        await self.bill(ctx, invoice, allocations, -1)
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.NEEDS_APPROVAL.value,
            "approved_at": None,
            "approved_by": None,
            "po_override": False,
            "unapproved_at": ctx.now,
            "unapproved_by": ctx.actor,
        })

    # =========================================================================
    # APPROVED -> IN_DRAW
    # =========================================================================

    async def _prepare_add_to_draw(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        draw_id = ctx.payload["draw_id"]
        draw = await self.store.get_draw(draw_id, session=ctx.session)
        if draw["status"] != DrawStatus.DRAFT.value:
            raise ValidationFailedError(f"Invoices can only be added to draft draws (draw is {draw['status']})")
        if draw.get("job_id") != invoice.get("job_id"):
            raise ValidationFailedError("Invoice and draw belong to different jobs")
        await self.locks.assert_editable(EntityType.DRAW.value, draw_id, ctx.actor)

        allocations = await self.store.list_allocations(invoice["_id"], session=ctx.session)
        self.require_balanced(invoice, allocations)

        remaining = billable_remaining(invoice)
        requested = ctx.payload.get("billed_amount")
        billed = remaining if requested is None else to_decimal(requested)

        if is_zero(billed):
            raise ValidationFailedError("billed_amount must be non-zero")
        if sign_of(billed) != sign_of(remaining):
            raise ValidationFailedError("billed_amount must carry the invoice's sign")
        if abs(billed) > abs(remaining) + EPSILON:
            raise ValidationFailedError(
                f"billed_amount {to_float(billed):.2f} exceeds the billable remainder {to_float(remaining):.2f}",
                details={"billable_remaining": to_float(remaining)}
            )

        ctx.scratch.update({"draw": draw, "allocations": allocations, "billed": billed})
        return None

    async def _apply_add_to_draw(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        draw = ctx.scratch["draw"]
        billed = ctx.scratch["billed"]
        splits = split_billing(ctx.scratch["allocations"], billed)

        draw_rows = []
        remainder_rows = []
        for split in splits:
            allocation = split.allocation
            if not is_zero(split.amount):
                draw_rows.append({
                    "_id": new_id(),
                    "draw_id": draw["_id"],
                    "invoice_id": invoice["_id"],
                    "job_id": invoice["job_id"],
                    "cost_code_id": allocation["cost_code_id"],
                    "po_line_item_id": allocation.get("po_line_item_id"),
                    "amount": to_float(split.amount),
                    "created_at": ctx.now,
                    "created_by": ctx.actor,
                })
            if not is_zero(split.remainder):
                remainder_rows.append(dict(allocation, amount=to_float(split.remainder)))

        if draw_rows:
            await self.store.draw_allocations.insert_many(draw_rows, session=ctx.session)
        await self.store.replace_allocations(invoice, remainder_rows, session=ctx.session)

        new_billed = safe_add(invoice.get("billed_amount"), billed)
        fully_billed = amounts_equal(new_billed, invoice["amount"])

        ctx.touch_draw(draw["_id"])
        await self.store.recompute_draw_total(draw["_id"], session=ctx.session)
        ctx.log_activity(EntityType.DRAW.value, draw["_id"], "invoice_added", {
            "invoice_id": invoice["_id"],
            "billed_amount": to_float(billed),
        })

        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.IN_DRAW.value,
            "draw_id": draw["_id"],
            "billed_amount": to_float(new_billed),
            "added_to_draw_at": ctx.now,
            "fully_billed_at": ctx.now if fully_billed else None,
        })

    # =========================================================================
    # IN_DRAW -> APPROVED
    # =========================================================================

    async def _prepare_remove_from_draw(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        draw_id = invoice.get("draw_id")
        requested = ctx.payload.get("draw_id")
        if requested and requested != draw_id:
            raise ValidationFailedError("Invoice is not in this draw")
        draw = await self.store.get_draw(draw_id, session=ctx.session)
        if draw["status"] != DrawStatus.DRAFT.value:
            raise ValidationFailedError(
                f"Invoices can only be removed from draft draws (draw is {draw['status']}). Unsubmit the draw first."
            )
        await self.locks.assert_editable(EntityType.DRAW.value, draw_id, ctx.actor)
        return None

    async def detach_from_draw(self, ctx: TransitionContext, invoice: Dict[str, Any], draw_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fold the invoice's draw allocations in draw_id back into its active
        allocations and lower billed_amount. Caller supplies the status change.
        """
        returned = await self.store.list_draw_allocations(draw_id=draw_id, invoice_id=invoice["_id"], session=ctx.session)
        active = await self.store.list_allocations(invoice["_id"], session=ctx.session)

        await self.store.draw_allocations.delete_many(
            {"draw_id": draw_id, "invoice_id": invoice["_id"]},
            session=ctx.session
        )
        await self.store.replace_allocations(invoice, merge_allocations(active, returned), session=ctx.session)

        returned_total = sum_amounts(returned)
        ctx.touch_draw(draw_id)
        await self.store.recompute_draw_total(draw_id, session=ctx.session)
        ctx.log_activity(EntityType.DRAW.value, draw_id, "invoice_removed", {
            "invoice_id": invoice["_id"],
            "amount": to_float(returned_total),
        })

        updates = {
            "draw_id": None,
            "billed_amount": to_float(safe_subtract(invoice.get("billed_amount"), returned_total)),
            "fully_billed_at": None,
        }
        updates.update(changes)
        return await self.save(ctx, invoice, updates)

    async def _apply_remove_from_draw(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        return await self.detach_from_draw(ctx, invoice, invoice["draw_id"], {
            "status": InvoiceStatus.APPROVED.value,
            "removed_from_draw_at": ctx.now,
        })

    # =========================================================================
    # IN_DRAW -> PAID (draw funding only)
    # =========================================================================

    async def _apply_mark_paid(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        raise TransitionNotAllowedError(
            EntityType.INVOICE.value,
            InvoiceStatus.IN_DRAW.value,
            InvoiceStatus.PAID.value,
            "In-draw invoices are paid by funding their draw"
        )

    # =========================================================================
    # CLOSE-OUT: NEEDS_APPROVAL | APPROVED -> PAID
    # =========================================================================

    async def _prepare_close_out(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        if not (ctx.payload.get("reason") or "").strip():
            raise ValidationFailedError("A close-out reason is required")
        return None

    async def _apply_close_out(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        allocations = await self.store.list_allocations(invoice["_id"], session=ctx.session)
        if invoice["status"] == InvoiceStatus.APPROVED.value:
            await self.bill(ctx, invoice, allocations, -1)
        await self.store.allocations.delete_many({"invoice_id": invoice["_id"]}, session=ctx.session)

        written_off = billable_remaining(invoice)
        logger.info(f"[TRANSITION] Invoice {invoice['_id']} closed out, {to_float(written_off):.2f} written off")
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.PAID.value,
            "closed_out_at": ctx.now,
            "closed_out_by": ctx.actor,
            "closeout_reason": ctx.payload["reason"].strip(),
            "written_off_amount": to_float(written_off),
            "archived": True,
        })

    # =========================================================================
    # PAID -> NEEDS_APPROVAL (after unarchive)
    # =========================================================================

    async def _apply_reopen(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.NEEDS_APPROVAL.value,
            "closed_out_at": None,
            "closed_out_by": None,
            "closeout_reason": None,
            "written_off_amount": None,
            "reopened_at": ctx.now,
            "reopened_by": ctx.actor,
        })

    # =========================================================================
    # DENIAL
    # =========================================================================

    async def _apply_deny(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        await self.store.allocations.delete_many({"invoice_id": invoice["_id"]}, session=ctx.session)
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.DENIED.value,
            "denied_at": ctx.now,
            "denied_by": ctx.actor,
            "denial_reason": ctx.payload["reason"].strip(),
        })

    async def _apply_resubmit(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        return await self.save(ctx, invoice, {
            "status": InvoiceStatus.RECEIVED.value,
            "denied_at": None,
            "denied_by": None,
            "denial_reason": None,
            "resubmitted_at": ctx.now,
            "resubmitted_by": ctx.actor,
        })

    # =========================================================================
    # NON-TRANSITION OPERATIONS
    # =========================================================================

    def edit_handler(self) -> LifecycleHandler:
        return LifecycleHandler("edit", self._apply_edit, self._prepare_edit)

    def allocate_handler(self) -> LifecycleHandler:
        return LifecycleHandler("allocate", self._apply_allocate, self._prepare_allocate)

    def unarchive_handler(self) -> LifecycleHandler:
        return LifecycleHandler("unarchive", self._apply_unarchive, self._prepare_unarchive)

    def delete_handler(self) -> LifecycleHandler:
        return LifecycleHandler("delete", self._apply_delete, self._prepare_delete)

    async def find_duplicate(self, vendor_id: str, invoice_number: str, exclude_id: Optional[str] = None, session=None) -> Optional[Dict[str, Any]]:
        query = {
            "vendor_id": vendor_id,
            "invoice_number": invoice_number,
            "deleted_at": None,
        }
        if exclude_id:
            query["_id"] = {"$ne": exclude_id}
        return await self.store.invoices.find_one(query, session=session)

    async def _prepare_edit(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        changes = {k: v for k, v in ctx.payload.get("changes", {}).items() if k in EDITABLE_FIELDS}
        if not changes:
            raise ValidationFailedError("No editable fields supplied")

        if invoice["status"] in {s.value for s in ARCHIVED_INVOICE_STATUSES} or invoice.get("archived"):
            raise ValidationFailedError(f"Archived invoices cannot be edited (status {invoice['status']})")

        errors = validate_invoice_fields(
            dict({k: invoice.get(k) for k in ("invoice_date", "due_date")}, **changes),
            partial=True
        )
        if errors:
            raise ValidationFailedError("Invalid invoice fields", errors=errors)

        status = InvoiceStatus(invoice["status"])
        if status in BILLABLE_INVOICE_STATUSES:
            for key in ("amount", "job_id", "po_id"):
                if key in changes and changes[key] != invoice.get(key):
                    raise ValidationFailedError(f"{key} cannot change after approval. Unapprove the invoice first.")

        if changes.get("po_id") and changes["po_id"] != invoice.get("po_id"):
            await self.require_open_po(ctx, changes["po_id"])

        if "amount" in changes:
            changes["amount"] = to_float(changes["amount"])
            existing = await self.store.list_allocations(invoice["_id"], session=ctx.session)
            if existing and sign_of(changes["amount"]) != sign_of(invoice["amount"]):
                raise ValidationFailedError("Changing the invoice sign requires clearing its allocations first")

        vendor_id = changes.get("vendor_id", invoice.get("vendor_id"))
        number = changes.get("invoice_number", invoice.get("invoice_number"))
        if "vendor_id" in changes or "invoice_number" in changes:
            duplicate = await self.find_duplicate(vendor_id, number, exclude_id=invoice["_id"], session=ctx.session)
            if duplicate:
                raise ValidationFailedError(
                    f"Invoice {number} already exists for this vendor",
                    details={"duplicate_id": duplicate["_id"]}
                )

        ctx.scratch["changes"] = changes
        return None

    async def _apply_edit(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        changes = ctx.scratch["changes"]
        if "job_id" in changes:
            await self.store.allocations.update_many(
                {"invoice_id": invoice["_id"]},
                {"$set": {"job_id": changes["job_id"]}},
                session=ctx.session
            )
        return await self.save(ctx, invoice, changes)

    async def _prepare_allocate(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        allowed = (InvoiceStatus.RECEIVED.value, InvoiceStatus.NEEDS_APPROVAL.value)
        if invoice["status"] not in allowed:
            raise ValidationFailedError(
                f"Allocations can only be changed while the invoice is received or needs approval (status {invoice['status']})"
            )
        rows = normalize_allocations(ctx.payload.get("allocations") or [])
        await self.check_allocation_rows(ctx, invoice, rows)
        ctx.scratch["allocations"] = rows
        return None

    async def _apply_allocate(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        rows = ctx.scratch["allocations"]
        await self.store.replace_allocations(invoice, rows, session=ctx.session)
        balance = allocation_balance(invoice, rows)
        if rows and not balance.balanced:
            ctx.warn(f"Allocations are {balance.difference:.2f} away from the invoice amount")
        return await self.save(ctx, invoice, {"coded_at": ctx.now, "coded_by": ctx.actor})

    async def _prepare_unarchive(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        if invoice["status"] != InvoiceStatus.PAID.value or not invoice.get("archived"):
            raise ValidationFailedError("Only archived paid invoices can be unarchived")
        if not invoice.get("closed_out_at"):
            raise ValidationFailedError("Only closed-out invoices can be unarchived")
        if await self.funded_draw_ids(ctx, invoice["_id"]):
            raise ValidationFailedError("Invoices linked to a funded draw cannot be unarchived")
        return None

    async def _apply_unarchive(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        return await self.save(ctx, invoice, {
            "archived": False,
            "unarchived_at": ctx.now,
            "unarchived_by": ctx.actor,
        })

    async def _prepare_delete(self, ctx: TransitionContext, invoice: Dict[str, Any]):
        if invoice["status"] == InvoiceStatus.PAID.value:
            raise ValidationFailedError("Paid invoices cannot be deleted")

        rows = await self.store.list_draw_allocations(invoice_id=invoice["_id"], session=ctx.session)
        draw_ids = sorted({row["draw_id"] for row in rows})
        draws = await self.store.draws.find({"_id": {"$in": draw_ids}}, session=ctx.session).to_list(length=None)
        locked = [d for d in draws if d["status"] != DrawStatus.DRAFT.value]
        if locked:
            raise ValidationFailedError(
                "Invoice is linked to a submitted or funded draw and cannot be deleted",
                details={"draw_ids": [d["_id"] for d in locked]}
            )
        for draw in draws:
            await self.locks.assert_editable(EntityType.DRAW.value, draw["_id"], ctx.actor)
        ctx.scratch["draw_rows"] = rows
        return None

    async def _apply_delete(self, ctx: TransitionContext, invoice: Dict[str, Any]) -> Dict[str, Any]:
        draw_rows = ctx.scratch["draw_rows"]
        changes = {"deleted_at": ctx.now, "deleted_by": ctx.actor}

        if InvoiceStatus(invoice["status"]) in BILLABLE_INVOICE_STATUSES:
            active = await self.store.list_allocations(invoice["_id"], session=ctx.session)
            await self.bill(ctx, invoice, active + draw_rows, -1)

        if draw_rows:
            await self.store.draw_allocations.delete_many({"invoice_id": invoice["_id"]}, session=ctx.session)
            for draw_id in {row["draw_id"] for row in draw_rows}:
                ctx.touch_draw(draw_id)
                await self.store.recompute_draw_total(draw_id, session=ctx.session)
            changes.update({
                "draw_id": None,
                "billed_amount": to_float(safe_subtract(invoice.get("billed_amount"), sum_amounts(draw_rows))),
            })

        return await self.save(ctx, invoice, changes)

    # =========================================================================
    # UNDO
    # =========================================================================

    async def capture(self, invoice: Dict[str, Any], session=None) -> Dict[str, Any]:
        """Full pre-transition state: invoice + active allocations + draw allocations"""
        return {
            "invoice": invoice,
            "allocations": await self.store.list_allocations(invoice["_id"], session=session),
            "draw_allocations": await self.store.list_draw_allocations(invoice_id=invoice["_id"], session=session),
        }

    async def restore(self, entry: Dict[str, Any], by: str, session=None) -> Dict[str, Any]:
        state = entry["state_before"]
        invoice_id = entry["entity_id"]

        current = await self.store.get_invoice(invoice_id, session=session, include_deleted=True)
        if current.get("version") != entry.get("version_after"):
            raise VersionConflictError(EntityType.INVOICE.value, invoice_id, entry.get("version_after"), current.get("version"))

        current_rows = await self.store.list_draw_allocations(invoice_id=invoice_id, session=session)
        draw_ids = set(entry.get("touched_draws") or [])
        draw_ids.update(row["draw_id"] for row in current_rows)
        draw_ids.update(row["draw_id"] for row in state["draw_allocations"])

        existing_draws = await self.store.draws.find({"_id": {"$in": sorted(draw_ids)}}, session=session).to_list(length=None)
        for draw in existing_draws:
            if draw["status"] != DrawStatus.DRAFT.value:
                raise TransitionNotAllowedError(
                    EntityType.DRAW.value, draw["status"], draw["status"],
                    f"Draw {draw.get('draw_number')} is {draw['status']}; undo would change it"
                )
        missing = draw_ids - {d["_id"] for d in existing_draws}
        if any(row["draw_id"] in missing for row in state["draw_allocations"]):
            raise TransitionNotAllowedError(
                EntityType.DRAW.value, "deleted", "deleted",
                "The draw this invoice belonged to has been deleted"
            )

        for effect in reversed(entry.get("effects") or []):
            await self.store.reverse_effect(effect, session=session)

        await self.store.overwrite("invoices", state["invoice"], session=session)
        await self.store.allocations.delete_many({"invoice_id": invoice_id}, session=session)
        if state["allocations"]:
            await self.store.allocations.insert_many(state["allocations"], session=session)
        await self.store.draw_allocations.delete_many({"invoice_id": invoice_id}, session=session)
        if state["draw_allocations"]:
            await self.store.draw_allocations.insert_many(state["draw_allocations"], session=session)

        for draw in existing_draws:
            await self.store.recompute_draw_total(draw["_id"], session=session)

        logger.info(f"[UNDO] Invoice {invoice_id} restored to {state['invoice']['status']} by {by}")
        return state["invoice"]

