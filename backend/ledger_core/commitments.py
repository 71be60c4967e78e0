"""
PURCHASE ORDERS & CHANGE ORDERS

- Issuing a PO inserts its line items and raises budget committed_amount per cost code
- Voiding a PO is blocked once any line has been invoiced; otherwise committed
  amounts are released (floored at zero)
- PO change orders move line item amounts (or add lines) once approved, which
  raises PO capacity and budget committed_amount
- Change orders are job-level contract changes; only approved ones can be billed
  on a draw, and an approved one can only be reopened while unbilled
"""

from pymongo.errors import PyMongoError
from typing import Dict, Any, List, Optional
import logging

from .errors import ValidationFailedError, NotFoundError, TransitionNotAllowedError
from .financial_precision import to_decimal, to_float, is_zero, ZERO
from .ledger_store import LedgerStore, new_id, wrap_database_error
from .reconciliation import aggregate_by_cost_code

logger = logging.getLogger(__name__)

PO_ISSUED = "issued"
PO_VOID = "void"

CHANGE_ORDER_STATUSES = ("draft", "pending_approval", "approved", "rejected")

# approved -> pending_approval only while nothing has been billed
CHANGE_ORDER_TRANSITIONS = {
    "draft": ("pending_approval",),
    "pending_approval": ("approved", "rejected", "draft"),
    "approved": ("pending_approval",),
    "rejected": ("draft",),
}

PO_CO_PENDING = "pending"
PO_CO_APPROVED = "approved"
PO_CO_REJECTED = "rejected"


class CommitmentService:
    """Purchase order and change order records feeding the reconciliation rules"""

    def __init__(self, store: LedgerStore):
        self.store = store

    # =========================================================================
    # PURCHASE ORDERS
    # =========================================================================

    async def issue_purchase_order(
        self,
        job_id: str,
        vendor_id: str,
        po_number: str,
        line_items: List[Dict[str, Any]],
        actor: str
    ) -> Dict[str, Any]:
        errors = []
        if not job_id:
            errors.append("job_id is required")
        if not vendor_id:
            errors.append("vendor_id is required")
        if not (po_number or "").strip():
            errors.append("po_number is required")
        if not line_items:
            errors.append("At least one line item is required")
        for index, line in enumerate(line_items or [], start=1):
            if not line.get("cost_code_id"):
                errors.append(f"Line {index}: cost_code_id is required")
            if to_decimal(line.get("amount")) <= ZERO:
                errors.append(f"Line {index}: amount must be positive")
        if errors:
            raise ValidationFailedError("Invalid purchase order", errors=errors)

        now = self.store.now()
        po = {
            "_id": new_id(),
            "job_id": job_id,
            "vendor_id": vendor_id,
            "po_number": po_number.strip(),
            "status": PO_ISSUED,
            "total_amount": to_float(sum(to_decimal(line["amount"]) for line in line_items)),
            "created_at": now,
            "created_by": actor,
        }
        lines = [{
            "_id": new_id(),
            "po_id": po["_id"],
            "job_id": job_id,
            "cost_code_id": line["cost_code_id"],
            "description": line.get("description"),
            "amount": to_float(line["amount"]),
            "invoiced_amount": 0.0,
            "created_at": now,
        } for line in line_items]

        try:
            async with self.store.transaction() as session:
                await self.store.purchase_orders.insert_one(po, session=session)
                await self.store.po_line_items.insert_many(lines, session=session)
                for cost_code_id, amount in aggregate_by_cost_code(lines).items():
                    await self.store.adjust_budget(job_id, cost_code_id, "committed_amount", amount, session=session)
        except PyMongoError as e:
            raise wrap_database_error(e)

        logger.info(f"[COMMITMENT] Issued PO {po['po_number']} for job {job_id}: {po['total_amount']:.2f}")
        return dict(po, line_items=lines)

    async def void_purchase_order(self, po_id: str, actor: str) -> Dict[str, Any]:
        po = await self.get_purchase_order(po_id)
        if po.get("status") == PO_VOID:
            raise ValidationFailedError("Purchase order is already void")

        lines = await self.store.po_line_items.find({"po_id": po_id}).to_list(length=None)
        if any(not is_zero(line.get("invoiced_amount")) for line in lines):
            raise ValidationFailedError("Purchase order has invoiced line items and cannot be voided")

        try:
            async with self.store.transaction() as session:
                for cost_code_id, amount in aggregate_by_cost_code(lines).items():
                    await self.store.adjust_budget(po["job_id"], cost_code_id, "committed_amount", -amount, session=session)
                await self.store.purchase_orders.update_one(
                    {"_id": po_id},
                    {"$set": {"status": PO_VOID, "voided_at": self.store.now(), "voided_by": actor}},
                    session=session
                )
        except PyMongoError as e:
            raise wrap_database_error(e)

        logger.info(f"[COMMITMENT] Voided PO {po['po_number']} by {actor}")
        return await self.store.purchase_orders.find_one({"_id": po_id})

    # =========================================================================
    # PO CHANGE ORDERS
    # =========================================================================

    async def get_purchase_order(self, po_id: str, session=None) -> Dict[str, Any]:
        po = await self.store.purchase_orders.find_one({"_id": po_id}, session=session)
        if not po:
            raise NotFoundError("Purchase order", po_id)
        return po

    async def create_po_change_order(
        self,
        po_id: str,
        line_items: List[Dict[str, Any]],
        actor: str,
        description: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Propose line item changes on an issued PO.

        Each line either adjusts an existing line (po_line_item_id) or adds a
        new one (cost_code_id). Nothing changes on the PO until approval.
        """
        po = await self.get_purchase_order(po_id)
        if po.get("status") == PO_VOID:
            raise ValidationFailedError("Change orders cannot be added to a void purchase order")

        existing = {
            line["_id"]: line
            for line in await self.store.po_line_items.find({"po_id": po_id}).to_list(length=None)
        }

        errors = []
        if not line_items:
            errors.append("At least one line item is required")
        changes = []
        for index, line in enumerate(line_items or [], start=1):
            amount = to_decimal(line.get("amount"))
            line_id = line.get("po_line_item_id")
            if is_zero(amount):
                errors.append(f"Line {index}: amount cannot be zero")
            if line_id:
                target = existing.get(line_id)
                if target is None:
                    errors.append(f"Line {index}: line item {line_id} is not on this purchase order")
                    continue
                changes.append({
                    "po_line_item_id": line_id,
                    "cost_code_id": target["cost_code_id"],
                    "description": line.get("description") or target.get("description"),
                    "amount": to_float(amount),
                })
            elif line.get("cost_code_id"):
                if amount < ZERO:
                    errors.append(f"Line {index}: a new line item must be positive")
                changes.append({
                    "po_line_item_id": None,
                    "cost_code_id": line["cost_code_id"],
                    "description": line.get("description"),
                    "amount": to_float(amount),
                })
            else:
                errors.append(f"Line {index}: po_line_item_id or cost_code_id is required")
        if errors:
            raise ValidationFailedError("Invalid purchase order change order", errors=errors)

        amount_change = sum((to_decimal(change["amount"]) for change in changes), ZERO)
        try:
            number = await self.store.next_sequence(f"po_change_order:{po_id}")
            change_order = {
                "_id": new_id(),
                "po_id": po_id,
                "job_id": po["job_id"],
                "change_order_number": number,
                "status": PO_CO_PENDING,
                "description": description,
                "reason": reason,
                "line_items": changes,
                "amount_change": to_float(amount_change),
                "previous_total": to_float(po.get("total_amount")),
                "created_at": self.store.now(),
                "created_by": actor,
            }
            await self.store.po_change_orders.insert_one(change_order)
        except PyMongoError as e:
            raise wrap_database_error(e)

        logger.info(f"[COMMITMENT] PO {po['po_number']} change order #{number} created: {change_order['amount_change']:.2f}")
        return change_order

    async def _pending_po_change_order(self, po_id: str, change_order_id: str) -> Dict[str, Any]:
        change_order = await self.store.po_change_orders.find_one({"_id": change_order_id, "po_id": po_id})
        if not change_order:
            raise NotFoundError("PO change order", change_order_id)
        if change_order["status"] != PO_CO_PENDING:
            raise ValidationFailedError(f"Change order is already {change_order['status']}")
        return change_order

    async def approve_po_change_order(self, po_id: str, change_order_id: str, actor: str) -> Dict[str, Any]:
        """
        Apply a pending change order: line amounts move, new lines are added,
        the PO total and budget committed amounts follow.
        """
        change_order = await self._pending_po_change_order(po_id, change_order_id)
        po = await self.get_purchase_order(po_id)
        if po.get("status") == PO_VOID:
            raise ValidationFailedError("Purchase order is void")

        errors = []
        for index, change in enumerate(change_order["line_items"], start=1):
            if not change.get("po_line_item_id"):
                continue
            line = await self.store.po_line_items.find_one({"_id": change["po_line_item_id"]})
            new_amount = to_decimal(line.get("amount")) + to_decimal(change["amount"])
            if new_amount < to_decimal(line.get("invoiced_amount")):
                errors.append(
                    f"Line {index}: new amount {to_float(new_amount):.2f} is below the invoiced "
                    f"{to_float(line.get('invoiced_amount')):.2f}"
                )
        if errors:
            raise ValidationFailedError("Change order would drop lines below their invoiced amounts", errors=errors)

        now = self.store.now()
        applied_lines = []
        try:
            async with self.store.transaction() as session:
                for change in change_order["line_items"]:
                    line_id = change.get("po_line_item_id")
                    if line_id:
                        await self.store.adjust_po_line(line_id, change["amount"], session=session, field="amount")
                    else:
                        line_id = new_id()
                        await self.store.po_line_items.insert_one({
                            "_id": line_id,
                            "po_id": po_id,
                            "job_id": po["job_id"],
                            "cost_code_id": change["cost_code_id"],
                            "description": change.get("description"),
                            "amount": change["amount"],
                            "invoiced_amount": 0.0,
                            "change_order_id": change_order_id,
                            "created_at": now,
                        }, session=session)
                    applied_lines.append(dict(change, po_line_item_id=line_id))

                for cost_code_id, amount in aggregate_by_cost_code(change_order["line_items"]).items():
                    await self.store.adjust_budget(po["job_id"], cost_code_id, "committed_amount", amount, session=session)

                amount_change = to_decimal(change_order["amount_change"])
                new_total = to_decimal(po.get("total_amount")) + amount_change
                await self.store.purchase_orders.update_one(
                    {"_id": po_id},
                    {"$set": {
                        "total_amount": to_float(new_total),
                        "change_order_total": to_float(to_decimal(po.get("change_order_total")) + amount_change),
                        "updated_at": now,
                    }},
                    session=session
                )
                await self.store.po_change_orders.update_one(
                    {"_id": change_order_id},
                    {"$set": {
                        "status": PO_CO_APPROVED,
                        "line_items": applied_lines,
                        "new_total": to_float(new_total),
                        "approved_at": now,
                        "approved_by": actor,
                    }},
                    session=session
                )
        except PyMongoError as e:
            raise wrap_database_error(e)

        logger.info(f"[COMMITMENT] PO {po['po_number']} change order #{change_order['change_order_number']} approved by {actor}")
        return await self.store.po_change_orders.find_one({"_id": change_order_id})

    async def reject_po_change_order(self, po_id: str, change_order_id: str, reason: str, actor: str) -> Dict[str, Any]:
        if not (reason or "").strip():
            raise ValidationFailedError("A rejection reason is required")
        await self._pending_po_change_order(po_id, change_order_id)
        try:
            await self.store.po_change_orders.update_one(
                {"_id": change_order_id},
                {"$set": {
                    "status": PO_CO_REJECTED,
                    "rejection_reason": reason.strip(),
                    "rejected_at": self.store.now(),
                    "rejected_by": actor,
                }}
            )
        except PyMongoError as e:
            raise wrap_database_error(e)
        logger.info(f"[COMMITMENT] PO change order {change_order_id} rejected by {actor}")
        return await self.store.po_change_orders.find_one({"_id": change_order_id})

    # =========================================================================
    # CHANGE ORDERS
    # =========================================================================

    async def record_change_order(
        self,
        job_id: str,
        change_order_number: str,
        amount,
        actor: str,
        title: Optional[str] = None,
        status: str = "approved"
    ) -> Dict[str, Any]:
        errors = []
        if not job_id:
            errors.append("job_id is required")
        if not (change_order_number or "").strip():
            errors.append("change_order_number is required")
        if is_zero(amount):
            errors.append("amount cannot be zero")
        if status not in CHANGE_ORDER_STATUSES:
            errors.append(f"status must be one of {', '.join(CHANGE_ORDER_STATUSES)}")
        if errors:
            raise ValidationFailedError("Invalid change order", errors=errors)

        now = self.store.now()
        change_order = {
            "_id": new_id(),
            "job_id": job_id,
            "change_order_number": change_order_number.strip(),
            "title": title,
            "amount": to_float(amount),
            "status": status,
            "billed_amount": 0.0,
            "created_at": now,
            "created_by": actor,
        }
        try:
            await self.store.change_orders.insert_one(change_order)
        except PyMongoError as e:
            raise wrap_database_error(e)
        logger.info(f"[COMMITMENT] Recorded change order {change_order['change_order_number']} ({status})")
        return change_order

    async def set_change_order_status(self, change_order_id: str, status: str, actor: str, reason: Optional[str] = None) -> Dict[str, Any]:
        change_order = await self.store.change_orders.find_one({"_id": change_order_id})
        if not change_order:
            raise NotFoundError("Change order", change_order_id)

        current = change_order.get("status")
        if status not in CHANGE_ORDER_STATUSES:
            raise ValidationFailedError(f"status must be one of {', '.join(CHANGE_ORDER_STATUSES)}")
        if status not in CHANGE_ORDER_TRANSITIONS.get(current, ()):
            raise TransitionNotAllowedError("change_order", current, status, f"Change order cannot move from {current} to {status}")
        if current == "approved" and not is_zero(change_order.get("billed_amount")):
            raise ValidationFailedError(
                "Change order has been billed on a draw and cannot leave approved",
                details={"billed_amount": change_order.get("billed_amount")}
            )
        if status == "rejected" and not (reason or "").strip():
            raise ValidationFailedError("A rejection reason is required")

        now = self.store.now()
        updates = {"status": status, "updated_at": now, "updated_by": actor}
        if status == "approved":
            updates.update({"approved_at": now, "approved_by": actor})
        elif status == "rejected":
            updates.update({"rejected_at": now, "rejected_by": actor, "rejection_reason": reason.strip()})
        elif current == "approved":
            updates.update({"approved_at": None, "approved_by": None})

        try:
            result = await self.store.change_orders.update_one(
                {"_id": change_order_id, "status": current},
                {"$set": updates}
            )
        except PyMongoError as e:
            raise wrap_database_error(e)
        if result.matched_count != 1:
            latest = await self.store.change_orders.find_one({"_id": change_order_id})
            raise TransitionNotAllowedError("change_order", latest.get("status"), status, "Change order status changed concurrently")

        logger.info(f"[COMMITMENT] Change order {change_order['change_order_number']} {current} -> {status} by {actor}")
        return await self.store.change_orders.find_one({"_id": change_order_id})
