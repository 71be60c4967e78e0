"""
LEDGER STORE

Thin layer over the motor database that the lifecycle engine writes through.

Provides:
1. Collection handles and index creation
2. Transaction scope (motor session + start_transaction, or no session when disabled)
3. Versioned compare-and-set replacement of invoices and draws
4. Read-then-write adjustment of shared aggregates (PO line items, budget lines,
   change orders), guarded on the value read and floored at zero
5. Atomic per-job draw numbering
6. Draw total recomputation from source rows

Every write accepts session=... so a whole lifecycle sequence can commit or roll
back together.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument, ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Callable
import uuid
import logging

from .errors import NotFoundError, VersionConflictError, DatabaseError
from .financial_precision import to_decimal, to_float, floor_zero, round_financial, is_zero
from .reconciliation import budget_delta, draw_total

logger = logging.getLogger(__name__)

# Attempts for a compare-and-set aggregate write before giving up
MAX_CAS_ATTEMPTS = 5


def new_id() -> str:
    return str(uuid.uuid4())


class LedgerStore:
    """
    Durable storage for invoices, allocations, purchase orders, budget lines,
    draws, draw allocations and change orders.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        use_transactions: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.client = client
        self.use_transactions = use_transactions and client is not None
        self.clock = clock or datetime.utcnow

    def now(self) -> datetime:
        return self.clock()

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    @property
    def invoices(self):
        return self.db.invoices

    @property
    def allocations(self):
        return self.db.invoice_allocations

    @property
    def purchase_orders(self):
        return self.db.purchase_orders

    @property
    def po_line_items(self):
        return self.db.po_line_items

    @property
    def budget_lines(self):
        return self.db.budget_lines

    @property
    def draws(self):
        return self.db.draws

    @property
    def draw_allocations(self):
        return self.db.draw_allocations

    @property
    def change_orders(self):
        return self.db.change_orders

    @property
    def po_change_orders(self):
        return self.db.po_change_orders

    @property
    def co_draw_billings(self):
        return self.db.co_draw_billings

    @property
    def jobs(self):
        return self.db.jobs

    @property
    def locks(self):
        return self.db.entity_locks

    @property
    def undo_journal(self):
        return self.db.undo_journal

    @property
    def counters(self):
        return self.db.counters

    async def ensure_indexes(self):
        """Create indexes the invariants rely on"""
        await self.locks.create_index(
            [("entity_type", ASCENDING), ("entity_id", ASCENDING)],
            unique=True,
            name="unique_entity_lock"
        )
        await self.locks.create_index("expires_at", name="lock_expiry")
        await self.budget_lines.create_index(
            [("job_id", ASCENDING), ("cost_code_id", ASCENDING)],
            unique=True,
            name="unique_budget_line"
        )
        await self.draws.create_index(
            [("job_id", ASCENDING), ("draw_number", ASCENDING)],
            unique=True,
            name="unique_draw_number"
        )
        await self.co_draw_billings.create_index(
            [("change_order_id", ASCENDING), ("draw_id", ASCENDING)],
            unique=True,
            name="unique_co_draw_billing"
        )
        await self.invoices.create_index(
            [("vendor_id", ASCENDING), ("invoice_number", ASCENDING)],
            name="vendor_invoice_number"
        )
        await self.allocations.create_index("invoice_id", name="allocation_invoice")
        await self.draw_allocations.create_index("draw_id", name="draw_allocation_draw")
        await self.draw_allocations.create_index("invoice_id", name="draw_allocation_invoice")
        await self.undo_journal.create_index(
            [("entity_type", ASCENDING), ("entity_id", ASCENDING), ("created_at", DESCENDING)],
            name="undo_entity_recent"
        )
        logger.info("[LEDGER_STORE] Indexes ensured")

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def transaction(self):
        """
        Yield a session inside an open transaction, or None when transactions
        are disabled (standalone mongod, test doubles).
        """
        if not self.use_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # =========================================================================
    # ENTITY READS
    # =========================================================================

    async def get_invoice(self, invoice_id: str, session=None, include_deleted: bool = False) -> Dict[str, Any]:
        query = {"_id": invoice_id}
        if not include_deleted:
            query["deleted_at"] = None
        invoice = await self.invoices.find_one(query, session=session)
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def get_draw(self, draw_id: str, session=None) -> Dict[str, Any]:
        draw = await self.draws.find_one({"_id": draw_id}, session=session)
        if not draw:
            raise NotFoundError("Draw", draw_id)
        return draw

    async def get_po_line_item(self, line_id: str, session=None) -> Dict[str, Any]:
        line = await self.po_line_items.find_one({"_id": line_id}, session=session)
        if not line:
            raise NotFoundError("PO line item", line_id)
        return line

    async def list_allocations(self, invoice_id: str, session=None) -> List[Dict[str, Any]]:
        cursor = self.allocations.find({"invoice_id": invoice_id}, session=session).sort("position", ASCENDING)
        return await cursor.to_list(length=None)

    async def list_draw_allocations(self, draw_id: Optional[str] = None, invoice_id: Optional[str] = None, session=None) -> List[Dict[str, Any]]:
        query = {}
        if draw_id:
            query["draw_id"] = draw_id
        if invoice_id:
            query["invoice_id"] = invoice_id
        return await self.draw_allocations.find(query, session=session).to_list(length=None)

    async def list_co_billings(self, draw_id: str, session=None) -> List[Dict[str, Any]]:
        return await self.co_draw_billings.find({"draw_id": draw_id}, session=session).to_list(length=None)

    # =========================================================================
    # VERSIONED WRITES
    # =========================================================================

    async def replace_versioned(self, collection_name: str, doc: Dict[str, Any], expected_version: int, session=None) -> Dict[str, Any]:
        """
        Compare-and-set replacement on the version column.

        The stored document must still carry expected_version; the new
        document is written with version + 1.
        """
        collection = self.db[collection_name]
        new_doc = dict(doc)
        new_doc["version"] = expected_version + 1
        new_doc["updated_at"] = self.now()

        result = await collection.replace_one(
            {"_id": doc["_id"], "version": expected_version},
            new_doc,
            session=session
        )
        if result.matched_count == 0:
            current = await collection.find_one({"_id": doc["_id"]}, {"version": 1}, session=session)
            if current is None:
                raise NotFoundError(collection_name, doc["_id"])
            raise VersionConflictError(collection_name, doc["_id"], expected_version, current.get("version"))
        return new_doc

    async def overwrite(self, collection_name: str, doc: Dict[str, Any], session=None):
        """Unconditional full overwrite (undo restore)"""
        await self.db[collection_name].replace_one({"_id": doc["_id"]}, doc, upsert=True, session=session)

    # =========================================================================
    # ALLOCATIONS
    # =========================================================================

    async def replace_allocations(self, invoice: Dict[str, Any], allocations: List[Dict[str, Any]], session=None) -> List[Dict[str, Any]]:
        """Delete an invoice's active allocations and insert the given rows"""
        await self.allocations.delete_many({"invoice_id": invoice["_id"]}, session=session)
        rows = []
        for position, allocation in enumerate(allocations):
            rows.append({
                "_id": allocation.get("_id") or new_id(),
                "invoice_id": invoice["_id"],
                "job_id": invoice.get("job_id"),
                "cost_code_id": allocation["cost_code_id"],
                "po_line_item_id": allocation.get("po_line_item_id"),
                "amount": to_float(allocation["amount"]),
                "notes": allocation.get("notes"),
                "position": position,
            })
        if rows:
            await self.allocations.insert_many(rows, session=session)
        return rows

    # =========================================================================
    # SHARED AGGREGATES
    # =========================================================================

    async def _adjust_field(
        self,
        collection_name: str,
        query: Dict[str, Any],
        field: str,
        delta,
        session=None,
        compute: Optional[Callable[[Dict[str, Any]], Decimal]] = None
    ) -> Decimal:
        """
        Read-then-write with a predicate on the value read.

        Returns the change actually applied (may differ from delta when the
        result floors at zero).
        """
        collection = self.db[collection_name]
        delta = to_decimal(delta)

        for attempt in range(MAX_CAS_ATTEMPTS):
            row = await collection.find_one(query, session=session)
            if row is None:
                raise NotFoundError(collection_name, str(query))

            raw_current = row.get(field)
            current = to_decimal(raw_current)
            if compute is not None:
                updated = compute(row)
            else:
                updated = round_financial(floor_zero(current + delta))

            result = await collection.update_one(
                {"_id": row["_id"], field: raw_current},
                {"$set": {field: to_float(updated), "updated_at": self.now()}},
                session=session
            )
            if result.matched_count == 1:
                return updated - current

            logger.info(f"[LEDGER_STORE] {collection_name}.{field} changed underneath us, retry {attempt + 1}")

        raise DatabaseError(
            f"Could not update {collection_name}.{field} after {MAX_CAS_ATTEMPTS} attempts",
            {"collection": collection_name, "query": query, "field": field}
        )

    async def ensure_budget_line(self, job_id: str, cost_code_id: str, session=None) -> Dict[str, Any]:
        """Fetch the budget line, creating it at a zero baseline when absent"""
        line = await self.budget_lines.find_one({"job_id": job_id, "cost_code_id": cost_code_id}, session=session)
        if line:
            return line

        line = {
            "_id": new_id(),
            "job_id": job_id,
            "cost_code_id": cost_code_id,
            "budgeted_amount": 0.0,
            "committed_amount": 0.0,
            "billed_amount": 0.0,
            "paid_amount": 0.0,
            "created_at": self.now(),
            "updated_at": self.now(),
        }
        try:
            await self.budget_lines.insert_one(line, session=session)
            logger.info(f"[LEDGER_STORE] Created budget line job={job_id} cost_code={cost_code_id} at zero baseline")
        except DuplicateKeyError:
            line = await self.budget_lines.find_one({"job_id": job_id, "cost_code_id": cost_code_id}, session=session)
        return line

    async def adjust_budget(self, job_id: str, cost_code_id: str, field: str, delta, session=None) -> Dict[str, Any]:
        """Apply a budget delta; returns the effect record"""
        await self.ensure_budget_line(job_id, cost_code_id, session=session)
        applied = await self._adjust_field(
            "budget_lines",
            {"job_id": job_id, "cost_code_id": cost_code_id},
            field,
            delta,
            session=session,
            compute=lambda row: budget_delta(row, field, delta),
        )
        return {
            "collection": "budget_lines",
            "query": {"job_id": job_id, "cost_code_id": cost_code_id},
            "field": field,
            "applied": to_float(applied),
        }

    async def adjust_po_line(self, line_id: str, delta, session=None, field: str = "invoiced_amount") -> Dict[str, Any]:
        applied = await self._adjust_field("po_line_items", {"_id": line_id}, field, delta, session=session)
        return {
            "collection": "po_line_items",
            "query": {"_id": line_id},
            "field": field,
            "applied": to_float(applied),
        }

    async def adjust_change_order(self, change_order_id: str, delta, session=None) -> Dict[str, Any]:
        applied = await self._adjust_field("change_orders", {"_id": change_order_id}, "billed_amount", delta, session=session)
        return {
            "collection": "change_orders",
            "query": {"_id": change_order_id},
            "field": "billed_amount",
            "applied": to_float(applied),
        }

    async def reverse_effect(self, effect: Dict[str, Any], session=None) -> Dict[str, Any]:
        """Undo a recorded aggregate effect (floored at zero)"""
        applied = to_decimal(effect["applied"])
        if is_zero(applied):
            return dict(effect, applied=0.0)
        if effect["collection"] == "budget_lines":
            query = effect["query"]
            return await self.adjust_budget(query["job_id"], query["cost_code_id"], effect["field"], -applied, session=session)
        reversed_applied = await self._adjust_field(effect["collection"], effect["query"], effect["field"], -applied, session=session)
        return dict(effect, applied=to_float(reversed_applied))

    # =========================================================================
    # DRAWS
    # =========================================================================

    async def next_draw_number(self, job_id: str, session=None) -> int:
        """Atomic per-job sequence"""
        return await self.next_sequence(f"draw_number:{job_id}", session=session)

    async def next_sequence(self, key: str, session=None) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": key},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )
        return counter["value"]

    async def recompute_draw_total(self, draw_id: str, session=None) -> float:
        """Recompute total_amount from draw allocations + change-order billings"""
        rows = await self.list_draw_allocations(draw_id=draw_id, session=session)
        billings = await self.list_co_billings(draw_id, session=session)
        total = draw_total(rows, billings)
        await self.draws.update_one(
            {"_id": draw_id},
            {"$set": {"total_amount": total, "total_recalculated_at": self.now()}},
            session=session
        )
        return total


def wrap_database_error(exc: PyMongoError) -> DatabaseError:
    logger.error(f"[LEDGER_STORE] Database failure: {exc}")
    return DatabaseError(f"Ledger store failure: {exc}", {"error_type": type(exc).__name__})
