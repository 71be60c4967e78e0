"""
DRAW LIFECYCLE HANDLERS

Draw graph: draft -> submitted -> funded, submitted -> draft (unsubmit).

- Draft draws are mutable: invoices and change-order billings can be added or removed
- Submitted draws reject edits until unsubmitted (a reason is required)
- Funded draws are permanently immutable

Funding (one transaction):
1. funding_difference = funded_amount - billed total (partial/over funding recorded)
2. Every in_draw invoice of the draw: paid_amount += its share of this draw;
   paid once cumulative paid covers the invoice, otherwise back to approved
3. Budget paid_amount += each draw allocation
4. Undo entries of the draw and of every paid invoice are invalidated

total_amount is always recomputed from draw allocations + change-order billings.
"""

from typing import Dict, Any, List, Optional, Tuple
import logging

from .context import TransitionContext, LifecycleHandler
from .errors import ValidationFailedError, NotFoundError, TransitionNotAllowedError, VersionConflictError
from .financial_precision import (
    to_decimal,
    to_float,
    safe_add,
    safe_subtract,
    sum_amounts,
    is_zero,
    EPSILON,
    ZERO,
)
from .invoice_lifecycle import InvoiceLifecycle
from .ledger_store import LedgerStore, new_id
from .locking import LockManager
from .state_machine import EntityType, InvoiceStatus, DrawStatus, validate_transition
from .undo_journal import UndoJournal

logger = logging.getLogger(__name__)

G702_OVERRIDE_FIELDS = (
    "original_contract_sum",
    "net_change_orders",
    "total_completed_to_date",
    "previous_certificates",
    "current_payment_due",
    "application_date",
    "period_to",
    "architect_project_number",
)


class DrawLifecycle:
    """Handlers for every draw operation that goes through the orchestrator"""

    def __init__(self, store: LedgerStore, locks: LockManager, journal: UndoJournal, invoices: InvoiceLifecycle):
        self.store = store
        self.locks = locks
        self.journal = journal
        self.invoices = invoices

    def transition_handlers(self) -> Dict[Tuple[DrawStatus, DrawStatus], LifecycleHandler]:
        S = DrawStatus
        return {
            (S.DRAFT, S.SUBMITTED): LifecycleHandler("submit", self._apply_submit, self._prepare_submit),
            (S.SUBMITTED, S.DRAFT): LifecycleHandler("unsubmit", self._apply_unsubmit),
            (S.SUBMITTED, S.FUNDED): LifecycleHandler("fund", self._apply_fund, self._prepare_fund, journaled=False),
        }

    async def save(self, ctx: TransitionContext, draw: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        current = await self.store.get_draw(draw["_id"], session=ctx.session)
        updated = dict(current)
        updated.update(changes)
        return await self.store.replace_versioned("draws", updated, draw["version"], session=ctx.session)

    def require_draft(self, draw: Dict[str, Any], operation: str):
        if draw["status"] != DrawStatus.DRAFT.value:
            raise ValidationFailedError(
                f"Cannot {operation}: draw {draw.get('draw_number')} is {draw['status']}",
                details={"draw_id": draw["_id"], "status": draw["status"]}
            )

    async def create(self, job_id: str, actor: str, period_end: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
        if not job_id:
            raise ValidationFailedError("job_id is required")
        now = self.store.now()
        draw = {
            "_id": new_id(),
            "job_id": job_id,
            "draw_number": await self.store.next_draw_number(job_id),
            "status": DrawStatus.DRAFT.value,
            "total_amount": 0.0,
            "period_end": period_end,
            "notes": notes,
            "g702_overrides": {},
            "version": 1,
            "created_at": now,
            "created_by": actor,
            "updated_at": now,
        }
        await self.store.draws.insert_one(draw)
        logger.info(f"[DRAW] Created draw #{draw['draw_number']} for job {job_id}")
        return draw

    # =========================================================================
    # DRAFT -> SUBMITTED
    # =========================================================================

    async def _prepare_submit(self, ctx: TransitionContext, draw: Dict[str, Any]):
        rows = await self.store.list_draw_allocations(draw_id=draw["_id"], session=ctx.session)
        billings = await self.store.list_co_billings(draw["_id"], session=ctx.session)
        if not rows and not billings:
            raise ValidationFailedError("Cannot submit an empty draw")
        return None

    async def _apply_submit(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        await self.store.recompute_draw_total(draw["_id"], session=ctx.session)
        return await self.save(ctx, draw, {
            "status": DrawStatus.SUBMITTED.value,
            "submitted_at": ctx.now,
            "submitted_by": ctx.actor,
            "locked_at": ctx.now,
        })

    # =========================================================================
    # SUBMITTED -> DRAFT
    # =========================================================================

    async def _apply_unsubmit(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        return await self.save(ctx, draw, {
            "status": DrawStatus.DRAFT.value,
            "locked_at": None,
            "unsubmitted_at": ctx.now,
            "unsubmitted_by": ctx.actor,
            "unsubmit_reason": ctx.payload["reason"].strip(),
        })

    # =========================================================================
    # SUBMITTED -> FUNDED
    # =========================================================================

    async def _prepare_fund(self, ctx: TransitionContext, draw: Dict[str, Any]):
        rows = await self.store.list_draw_allocations(draw_id=draw["_id"], session=ctx.session)
        by_invoice: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            by_invoice.setdefault(row["invoice_id"], []).append(row)

        for invoice_id in by_invoice:
            await self.locks.assert_editable(EntityType.INVOICE.value, invoice_id, ctx.actor)

        requested = ctx.payload.get("funded_amount")
        if requested is not None and to_decimal(requested) < ZERO:
            raise ValidationFailedError("funded_amount cannot be negative")

        ctx.scratch["by_invoice"] = by_invoice
        return None

    async def _apply_fund(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        billed_total = await self.store.recompute_draw_total(draw["_id"], session=ctx.session)
        requested = ctx.payload.get("funded_amount")
        funded_amount = to_decimal(billed_total if requested is None else requested)
        difference = safe_subtract(funded_amount, billed_total)

        paid_count = 0
        returned_count = 0
        for invoice_id, rows in ctx.scratch["by_invoice"].items():
            invoice = await self.store.get_invoice(invoice_id, session=ctx.session, include_deleted=True)
            if invoice["status"] != InvoiceStatus.IN_DRAW.value:
                ctx.warn(f"Invoice {invoice.get('invoice_number')} is {invoice['status']}; skipped during funding")
                continue

            share = sum_amounts(rows)
            paid_amount = safe_add(invoice.get("paid_amount"), share)
            fully_paid = abs(paid_amount) >= abs(to_decimal(invoice["amount"])) - EPSILON

            for row in rows:
                ctx.record(await self.store.adjust_budget(
                    row["job_id"], row["cost_code_id"], "paid_amount", row["amount"], session=ctx.session
                ))

            if fully_paid:
                validate_transition(EntityType.INVOICE, InvoiceStatus.IN_DRAW, InvoiceStatus.PAID)
                changes = {
                    "status": InvoiceStatus.PAID.value,
                    "paid_amount": to_float(paid_amount),
                    "paid_at": ctx.now,
                    "archived": True,
                    "last_funded_draw_id": draw["_id"],
                }
                paid_count += 1
            else:
                validate_transition(EntityType.INVOICE, InvoiceStatus.IN_DRAW, InvoiceStatus.APPROVED)
                changes = {
                    "status": InvoiceStatus.APPROVED.value,
                    "paid_amount": to_float(paid_amount),
                    "draw_id": None,
                    "last_funded_draw_id": draw["_id"],
                }
                returned_count += 1

            await self.invoices.save(ctx, invoice, changes)
            await self.journal.invalidate(EntityType.INVOICE.value, invoice_id, session=ctx.session)
            ctx.log_activity(EntityType.INVOICE.value, invoice_id, "paid" if fully_paid else "partially_paid", {
                "draw_id": draw["_id"],
                "amount": to_float(share),
            })

        await self.journal.invalidate(EntityType.DRAW.value, draw["_id"], session=ctx.session)

        note = None
        if not is_zero(difference):
            kind = "Short" if difference < ZERO else "Over"
            note = f"{kind} funded by {to_float(abs(difference)):.2f}"
            ctx.warn(note)

        logger.info(
            f"[DRAW] Funded draw {draw['_id']}: billed {billed_total:.2f}, funded {to_float(funded_amount):.2f}, "
            f"{paid_count} paid, {returned_count} partially paid"
        )
        ctx.request_stamp("FUNDED")
        return await self.save(ctx, draw, {
            "status": DrawStatus.FUNDED.value,
            "funded_at": ctx.now,
            "funded_by": ctx.actor,
            "funded_amount": to_float(funded_amount),
            "funding_difference": to_float(difference),
            "partial_funding_note": note,
        })

    # =========================================================================
    # CHANGE ORDER BILLING
    # =========================================================================

    def bill_change_order_handler(self) -> LifecycleHandler:
        return LifecycleHandler("bill_change_order", self._apply_bill_change_order, self._prepare_bill_change_order)

    def unbill_change_order_handler(self) -> LifecycleHandler:
        return LifecycleHandler("unbill_change_order", self._apply_unbill_change_order, self._prepare_unbill_change_order)

    async def _prepare_bill_change_order(self, ctx: TransitionContext, draw: Dict[str, Any]):
        self.require_draft(draw, "bill a change order")
        change_order_id = ctx.payload.get("change_order_id")
        change_order = await self.store.change_orders.find_one({"_id": change_order_id}, session=ctx.session)
        if not change_order:
            raise NotFoundError("Change order", change_order_id)
        if change_order.get("job_id") != draw.get("job_id"):
            raise ValidationFailedError("Change order belongs to a different job")
        if change_order.get("status") != "approved":
            raise ValidationFailedError(f"Only approved change orders can be billed (status {change_order.get('status')})")

        amount = to_decimal(ctx.payload.get("amount"))
        if amount <= ZERO:
            raise ValidationFailedError("Change order billing amount must be positive")

        existing = await self.store.co_draw_billings.find_one(
            {"change_order_id": change_order_id, "draw_id": draw["_id"]},
            session=ctx.session
        )
        previous = to_decimal(existing["amount"]) if existing else ZERO
        billed_elsewhere = safe_subtract(change_order.get("billed_amount"), previous)
        unbilled = safe_subtract(change_order.get("amount"), billed_elsewhere)
        if amount > unbilled + EPSILON:
            raise ValidationFailedError(
                f"Billing {to_float(amount):.2f} exceeds the change order's unbilled {to_float(unbilled):.2f}",
                details={"unbilled_amount": to_float(unbilled)}
            )

        ctx.scratch.update({"change_order": change_order, "existing": existing, "amount": amount, "previous": previous})
        return None

    async def _apply_bill_change_order(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        change_order = ctx.scratch["change_order"]
        existing = ctx.scratch["existing"]
        amount = ctx.scratch["amount"]

        if existing:
            await self.store.co_draw_billings.update_one(
                {"_id": existing["_id"]},
                {"$set": {"amount": to_float(amount), "updated_at": ctx.now}},
                session=ctx.session
            )
        else:
            await self.store.co_draw_billings.insert_one({
                "_id": new_id(),
                "change_order_id": change_order["_id"],
                "draw_id": draw["_id"],
                "job_id": draw["job_id"],
                "amount": to_float(amount),
                "created_at": ctx.now,
                "created_by": ctx.actor,
            }, session=ctx.session)

        ctx.record(await self.store.adjust_change_order(
            change_order["_id"], amount - ctx.scratch["previous"], session=ctx.session
        ))
        await self.store.recompute_draw_total(draw["_id"], session=ctx.session)
        return await self.save(ctx, draw, {})

    async def _prepare_unbill_change_order(self, ctx: TransitionContext, draw: Dict[str, Any]):
        self.require_draft(draw, "remove a change order billing")
        billing = await self.store.co_draw_billings.find_one(
            {"change_order_id": ctx.payload.get("change_order_id"), "draw_id": draw["_id"]},
            session=ctx.session
        )
        if not billing:
            raise NotFoundError("Change order billing", ctx.payload.get("change_order_id"))
        ctx.scratch["billing"] = billing
        return None

    async def _apply_unbill_change_order(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        billing = ctx.scratch["billing"]
        await self.store.co_draw_billings.delete_one({"_id": billing["_id"]}, session=ctx.session)
        ctx.record(await self.store.adjust_change_order(
            billing["change_order_id"], -to_decimal(billing["amount"]), session=ctx.session
        ))
        await self.store.recompute_draw_total(draw["_id"], session=ctx.session)
        return await self.save(ctx, draw, {})

    # =========================================================================
    # G702 OVERRIDES
    # =========================================================================

    def g702_handler(self) -> LifecycleHandler:
        return LifecycleHandler("update_g702", self._apply_g702, self._prepare_g702)

    async def _prepare_g702(self, ctx: TransitionContext, draw: Dict[str, Any]):
        self.require_draft(draw, "edit G702 values")
        overrides = ctx.payload.get("overrides") or {}
        unknown = sorted(set(overrides) - set(G702_OVERRIDE_FIELDS))
        if unknown:
            raise ValidationFailedError(f"Unknown G702 fields: {', '.join(unknown)}")
        return None

    async def _apply_g702(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(draw.get("g702_overrides") or {})
        for key, value in (ctx.payload.get("overrides") or {}).items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return await self.save(ctx, draw, {"g702_overrides": merged})

    # =========================================================================
    # DELETE
    # =========================================================================

    def delete_handler(self) -> LifecycleHandler:
        return LifecycleHandler("delete", self._apply_delete, self._prepare_delete, journaled=False)

    async def _prepare_delete(self, ctx: TransitionContext, draw: Dict[str, Any]):
        self.require_draft(draw, "delete")
        rows = await self.store.list_draw_allocations(draw_id=draw["_id"], session=ctx.session)
        invoice_ids = sorted({row["invoice_id"] for row in rows})
        for invoice_id in invoice_ids:
            await self.locks.assert_editable(EntityType.INVOICE.value, invoice_id, ctx.actor)
        ctx.scratch["invoice_ids"] = invoice_ids
        return None

    async def _apply_delete(self, ctx: TransitionContext, draw: Dict[str, Any]) -> Dict[str, Any]:
        for invoice_id in ctx.scratch["invoice_ids"]:
            invoice = await self.store.get_invoice(invoice_id, session=ctx.session, include_deleted=True)
            changes = {}
            if invoice["status"] == InvoiceStatus.IN_DRAW.value and invoice.get("draw_id") == draw["_id"]:
                validate_transition(EntityType.INVOICE, InvoiceStatus.IN_DRAW, InvoiceStatus.APPROVED)
                changes["status"] = InvoiceStatus.APPROVED.value
            await self.invoices.detach_from_draw(ctx, invoice, draw["_id"], changes)
            await self.journal.invalidate(EntityType.INVOICE.value, invoice_id, session=ctx.session)

        billings = await self.store.list_co_billings(draw["_id"], session=ctx.session)
        for billing in billings:
            ctx.record(await self.store.adjust_change_order(
                billing["change_order_id"], -to_decimal(billing["amount"]), session=ctx.session
            ))
        await self.store.co_draw_billings.delete_many({"draw_id": draw["_id"]}, session=ctx.session)

        result = await self.store.draws.delete_one({"_id": draw["_id"], "version": draw["version"]}, session=ctx.session)
        if result.deleted_count == 0:
            current = await self.store.draws.find_one({"_id": draw["_id"]}, session=ctx.session)
            raise VersionConflictError(EntityType.DRAW.value, draw["_id"], draw["version"], current.get("version") if current else None)
        await self.journal.invalidate(EntityType.DRAW.value, draw["_id"], session=ctx.session)

        logger.info(f"[DRAW] Deleted draft draw {draw['_id']} ({len(ctx.scratch['invoice_ids'])} invoices released)")
        return dict(draw, deleted=True)

    # =========================================================================
    # UNDO
    # =========================================================================

    async def capture(self, draw: Dict[str, Any], session=None) -> Dict[str, Any]:
        return {
            "draw": draw,
            "co_billings": await self.store.list_co_billings(draw["_id"], session=session),
        }

    async def restore(self, entry: Dict[str, Any], by: str, session=None) -> Dict[str, Any]:
        state = entry["state_before"]
        draw_id = entry["entity_id"]

        current = await self.store.get_draw(draw_id, session=session)
        if current.get("version") != entry.get("version_after"):
            raise VersionConflictError(EntityType.DRAW.value, draw_id, entry.get("version_after"), current.get("version"))
        if current["status"] == DrawStatus.FUNDED.value:
            raise TransitionNotAllowedError(
                EntityType.DRAW.value, current["status"], state["draw"]["status"],
                "Funded draws are permanently immutable"
            )

        for effect in reversed(entry.get("effects") or []):
            await self.store.reverse_effect(effect, session=session)

        await self.store.overwrite("draws", state["draw"], session=session)
        await self.store.co_draw_billings.delete_many({"draw_id": draw_id}, session=session)
        if state["co_billings"]:
            await self.store.co_draw_billings.insert_many(state["co_billings"], session=session)
        await self.store.recompute_draw_total(draw_id, session=session)

        logger.info(f"[UNDO] Draw {draw_id} restored to {state['draw']['status']} by {by}")
        return await self.store.get_draw(draw_id, session=session)
