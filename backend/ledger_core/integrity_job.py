"""
JOB RECONCILIATION JOB

Recomputes a job's ledger figures from base rows and compares them with the
stored values:

1. Invoice active allocations vs. billable remainder (approved invoices)
2. Invoice billed_amount vs. its draw allocations
3. Draw total_amount vs. draw allocations + change-order billings
4. PO line item invoiced_amount vs. approved allocations + draw allocations
5. Budget billed_amount / paid_amount vs. the same base rows

Mismatches beyond one cent are reported. Nothing is auto-fixed.

Usage:
    job = JobReconciliationJob(store)
    report = await job.run(job_id)
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List
import logging

from .financial_precision import to_decimal, to_float, sum_amounts, EPSILON, ZERO
from .ledger_store import LedgerStore
from .reconciliation import allocation_balance, draw_total
from .state_machine import InvoiceStatus, DrawStatus

logger = logging.getLogger(__name__)

# Invoices whose active allocations carry billed PO/budget effects
ACTIVE_BILLING_STATUSES = [InvoiceStatus.APPROVED.value, InvoiceStatus.IN_DRAW.value]


class JobReconciliationJob:
    """
    Verify a job's stored aggregates against base rows.

    Reports mismatches but does NOT auto-fix.
    """

    TOLERANCE = EPSILON

    def __init__(self, store: LedgerStore):
        self.store = store
        self.mismatches: List[Dict[str, Any]] = []
        self.checked_count = 0

    def _compare(self, kind: str, entity_id: str, field: str, stored, expected):
        self.checked_count += 1
        difference = to_decimal(stored) - to_decimal(expected)
        if abs(difference) > self.TOLERANCE:
            self.mismatches.append({
                "kind": kind,
                "id": entity_id,
                "field": field,
                "stored": to_float(stored),
                "expected": to_float(expected),
                "difference": to_float(difference),
            })

    async def run(self, job_id: str) -> Dict[str, Any]:
        start_time = datetime.utcnow()
        self.mismatches = []
        self.checked_count = 0

        logger.info(f"[INTEGRITY_JOB] Reconciling job {job_id}...")

        invoices = await self.store.invoices.find({"job_id": job_id, "deleted_at": None}).to_list(length=None)
        invoice_ids = [inv["_id"] for inv in invoices]
        allocations = await self.store.allocations.find({"invoice_id": {"$in": invoice_ids}}).to_list(length=None)
        draw_rows = await self.store.draw_allocations.find({"invoice_id": {"$in": invoice_ids}}).to_list(length=None)
        draws = await self.store.draws.find({"job_id": job_id}).to_list(length=None)

        allocations_by_invoice: Dict[str, List[Dict[str, Any]]] = {}
        for row in allocations:
            allocations_by_invoice.setdefault(row["invoice_id"], []).append(row)
        draw_rows_by_invoice: Dict[str, List[Dict[str, Any]]] = {}
        for row in draw_rows:
            draw_rows_by_invoice.setdefault(row["invoice_id"], []).append(row)

        # 1 + 2: invoices
        billing_rows: List[Dict[str, Any]] = []
        for invoice in invoices:
            active = allocations_by_invoice.get(invoice["_id"], [])
            billed_rows = draw_rows_by_invoice.get(invoice["_id"], [])

            if invoice["status"] == InvoiceStatus.APPROVED.value:
                balance = allocation_balance(invoice, active)
                self._compare("invoice", invoice["_id"], "allocations", balance.allocated_total, balance.billable_remaining)

            self._compare("invoice", invoice["_id"], "billed_amount", invoice.get("billed_amount"), sum_amounts(billed_rows))

            if invoice["status"] in ACTIVE_BILLING_STATUSES:
                billing_rows.extend(active)
            billing_rows.extend(billed_rows)

        # 3: draws
        funded_ids = set()
        for draw in draws:
            rows = await self.store.list_draw_allocations(draw_id=draw["_id"])
            billings = await self.store.list_co_billings(draw["_id"])
            self._compare("draw", draw["_id"], "total_amount", draw.get("total_amount"), draw_total(rows, billings))
            if draw["status"] == DrawStatus.FUNDED.value:
                funded_ids.add(draw["_id"])

        # 4: PO line items
        po_expected: Dict[str, Decimal] = {}
        for row in billing_rows:
            if row.get("po_line_item_id"):
                po_expected[row["po_line_item_id"]] = po_expected.get(row["po_line_item_id"], ZERO) + to_decimal(row["amount"])
        lines = await self.store.po_line_items.find({"job_id": job_id}).to_list(length=None)
        for line in lines:
            self._compare("po_line_item", line["_id"], "invoiced_amount", line.get("invoiced_amount"), po_expected.get(line["_id"], ZERO))

        # 5: budget lines
        billed_expected: Dict[str, Decimal] = {}
        for row in billing_rows:
            billed_expected[row["cost_code_id"]] = billed_expected.get(row["cost_code_id"], ZERO) + to_decimal(row["amount"])
        paid_expected: Dict[str, Decimal] = {}
        for row in draw_rows:
            if row["draw_id"] in funded_ids:
                paid_expected[row["cost_code_id"]] = paid_expected.get(row["cost_code_id"], ZERO) + to_decimal(row["amount"])

        budget_lines = await self.store.budget_lines.find({"job_id": job_id}).to_list(length=None)
        for line in budget_lines:
            code = line["cost_code_id"]
            self._compare("budget_line", line["_id"], "billed_amount", line.get("billed_amount"), max(ZERO, billed_expected.get(code, ZERO)))
            self._compare("budget_line", line["_id"], "paid_amount", line.get("paid_amount"), max(ZERO, paid_expected.get(code, ZERO)))

        end_time = datetime.utcnow()
        report = {
            "job_name": "JobReconciliationJob",
            "job_id": job_id,
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round((end_time - start_time).total_seconds() * 1000, 2),
            "checks_run": self.checked_count,
            "mismatches_found": len(self.mismatches),
            "mismatches": self.mismatches,
            "balanced": not self.mismatches,
        }

        if self.mismatches:
            logger.warning(
                f"[INTEGRITY_JOB] Job {job_id}: {len(self.mismatches)} mismatches out of {self.checked_count} checks"
            )
        else:
            logger.info(f"[INTEGRITY_JOB] Job {job_id} reconciled. All {self.checked_count} checks passed.")
        return report
