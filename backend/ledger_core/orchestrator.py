"""
LIFECYCLE ORCHESTRATOR

Top-level entry point for every invoice and draw mutation.

Per operation:
1. Load the entity (NOT_FOUND)
2. Acquire the advisory lock (LOCKED)
3. Open one transaction:
   a. reload, check expected_version (VERSION_CONFLICT)
   b. validate the status edge (TRANSITION_NOT_ALLOWED) and preconditions (VALIDATION_FAILED)
   c. reconciliation checks; a PO overage without override returns a PO_OVERAGE result
   d. write the undo snapshot
   e. apply the state change and every dependent update
4. Release the lock (only when this call created it)
5. Best-effort side effects: stamping, activity log, broadcast -> warnings

Usage:
    orchestrator = build_orchestrator(db, client, settings)
    result = await orchestrator.request_transition("invoice", invoice_id, "approved", {...}, "alice")
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable, Awaitable
import logging

from .collaborators import DocumentStamper, Broadcaster
from .commitments import PO_VOID
from .context import TransitionContext, LifecycleHandler
from .draw_lifecycle import DrawLifecycle
from .errors import (
    LedgerError,
    ValidationFailedError,
    VersionConflictError,
    TransitionNotAllowedError,
    PoOverage,
)
from .financial_precision import to_float
from .invoice_lifecycle import InvoiceLifecycle, validate_invoice_fields
from .ledger_store import LedgerStore, new_id, wrap_database_error
from .locking import LockManager
from .settings import Settings
from .state_machine import (
    EntityType,
    InvoiceStatus,
    DrawStatus,
    parse_status,
    validate_transition,
    invoice_preconditions,
    draw_preconditions,
)
from .undo_journal import UndoJournal

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """Outcome of an orchestrated operation"""
    status: str
    entity: Optional[Dict[str, Any]]
    action: str
    warnings: List[str] = field(default_factory=list)
    undo: Optional[Dict[str, Any]] = None
    po_overage: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def error_code(self) -> Optional[str]:
        return self.po_overage["code"] if self.po_overage else None


class LifecycleOrchestrator:
    """
    Coordinates the Transition Validator, Reconciliation Calculator,
    Lock Manager and Undo Journal for every mutation.
    """

    def __init__(
        self,
        store: LedgerStore,
        locks: LockManager,
        journal: UndoJournal,
        stamper: Optional[DocumentStamper] = None,
        broadcaster: Optional[Broadcaster] = None,
        activity=None
    ):
        self.store = store
        self.locks = locks
        self.journal = journal
        self.stamper = stamper or DocumentStamper()
        self.broadcaster = broadcaster
        self.activity = activity

        self.invoices = InvoiceLifecycle(store, locks)
        self.draws = DrawLifecycle(store, locks, journal, self.invoices)

        self._handlers = {
            EntityType.INVOICE: self.invoices.transition_handlers(),
            EntityType.DRAW: self.draws.transition_handlers(),
        }
        journal.register_restorer(EntityType.INVOICE.value, self.invoices.restore)
        journal.register_restorer(EntityType.DRAW.value, self.draws.restore)

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _load(self, entity_type: EntityType, entity_id: str, session=None) -> Dict[str, Any]:
        if entity_type == EntityType.INVOICE:
            return await self.store.get_invoice(entity_id, session=session)
        return await self.store.get_draw(entity_id, session=session)

    async def _capture(self, entity_type: EntityType, entity: Dict[str, Any], session=None) -> Dict[str, Any]:
        if entity_type == EntityType.INVOICE:
            return await self.invoices.capture(entity, session=session)
        return await self.draws.capture(entity, session=session)

    async def _execute(
        self,
        entity_type: EntityType,
        entity_id: str,
        actor: str,
        payload: Dict[str, Any],
        resolve: Callable[[TransitionContext, Dict[str, Any]], Awaitable[LifecycleHandler]]
    ) -> TransitionResult:
        if not actor:
            raise ValidationFailedError("performed_by is required")

        await self._load(entity_type, entity_id)
        acquired = await self.locks.acquire(entity_type.value, entity_id, actor)

        try:
            ctx = TransitionContext(
                store=self.store,
                actor=actor,
                entity_type=entity_type.value,
                entity_id=entity_id,
                action="",
                payload=payload,
                now=self.store.now(),
            )
            try:
                async with self.store.transaction() as session:
                    ctx.session = session
                    entity = await self._load(entity_type, entity_id, session=session)

                    expected = payload.get("expected_version")
                    if expected is not None and expected != entity.get("version"):
                        raise VersionConflictError(entity_type.value, entity_id, expected, entity.get("version"))

                    handler = await resolve(ctx, entity)
                    ctx.action = handler.action
                    from_status = entity.get("status")

                    if handler.prepare is not None:
                        outcome = await handler.prepare(ctx, entity)
                        if isinstance(outcome, PoOverage):
                            return TransitionResult(
                                status="po_overage",
                                entity=entity,
                                action=handler.action,
                                po_overage=outcome.to_dict(),
                            )

                    entry = None
                    if handler.journaled:
                        entry = await self.journal.snapshot(
                            entity_type.value,
                            entity_id,
                            handler.action,
                            await self._capture(entity_type, entity, session=session),
                            actor,
                            session=session
                        )

                    try:
                        updated = await handler.apply(ctx, entity)
                    except Exception:
                        if entry is not None and session is None:
                            await self.journal.discard(entry["_id"])
                        raise

                    if entry is not None:
                        await self.journal.seal(
                            entry["_id"], ctx.effects, updated.get("version"), list(ctx.touched_draws), session=session
                        )
            except PyMongoError as e:
                raise wrap_database_error(e)

            logger.info(
                f"[TRANSITION] {actor} {handler.action} {entity_type.value}:{entity_id} "
                f"{from_status} -> {updated.get('status')}"
            )
            await self._after_commit(ctx, updated, from_status)

            undo = None
            if entry is not None:
                undo = await self.journal.available(entity_type.value, entity_id)
            return TransitionResult(
                status="success",
                entity=updated,
                action=handler.action,
                warnings=ctx.warnings,
                undo=undo,
            )
        finally:
            if acquired["created"]:
                try:
                    await self.locks.release(acquired["lock"]["_id"], actor)
                except LedgerError as e:
                    logger.warning(f"[LOCK] Could not release {entity_type.value}:{entity_id}: {e.message}")

    async def _after_commit(self, ctx: TransitionContext, entity: Dict[str, Any], from_status: Optional[str]):
        """Side effects that can fail without undoing the transition"""
        if ctx.stamp:
            try:
                stamped = await self.stamper.stamp(ctx.entity_type, entity, ctx.stamp)
                if stamped:
                    entity["stamped_document_url"] = stamped
            except Exception as e:
                logger.error(f"[STAMP] Stamping {ctx.entity_type}:{ctx.entity_id} failed: {str(e)}")
                ctx.warn(f"PDF stamping failed: {str(e)}")

        if self.activity is not None:
            rows = [{
                "entity_type": ctx.entity_type,
                "entity_id": ctx.entity_id,
                "action": ctx.action,
                "details": {"from_status": from_status, "to_status": entity.get("status")},
            }] + ctx.activity
            for row in rows:
                logged = await self.activity.log(
                    row["entity_type"], row["entity_id"], row["action"], ctx.actor, row["details"]
                )
                if not logged:
                    ctx.warn(f"Activity log for {row['entity_type']} {row['action']} could not be written")

        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(f"{ctx.entity_type}.{ctx.action}", {
                    "entity_type": ctx.entity_type,
                    "entity_id": ctx.entity_id,
                    "action": ctx.action,
                    "from_status": from_status,
                    "status": entity.get("status"),
                    "version": entity.get("version"),
                    "performed_by": ctx.actor,
                })
            except Exception as e:
                logger.error(f"[BROADCAST] Could not schedule broadcast: {str(e)}")
                ctx.warn("Change notification could not be sent")

    def _fixed(self, handler: LifecycleHandler):
        async def resolve(ctx: TransitionContext, entity: Dict[str, Any]) -> LifecycleHandler:
            return handler
        return resolve

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def request_transition(
        self,
        entity_type: str,
        entity_id: str,
        target_status: str,
        payload: Optional[Dict[str, Any]],
        actor: str
    ) -> TransitionResult:
        """Move an invoice or draw to target_status"""
        try:
            kind = EntityType(entity_type)
        except ValueError:
            raise ValidationFailedError(f"Unknown entity type '{entity_type}'")
        target = parse_status(kind, target_status)
        payload = payload or {}

        async def resolve(ctx: TransitionContext, entity: Dict[str, Any]) -> LifecycleHandler:
            current = parse_status(kind, entity["status"])

            # Draw funding reports a draft or funded draw as a validation failure
            if kind == EntityType.DRAW:
                problems = draw_preconditions(entity, target, payload)
                if problems:
                    raise ValidationFailedError(problems[0], errors=problems)
            validate_transition(kind, current, target)

            if kind == EntityType.INVOICE:
                problems = invoice_preconditions(entity, target, payload)
                if problems:
                    raise ValidationFailedError(problems[0], errors=problems)

            handler = self._handlers[kind].get((current, target))
            if handler is None:
                raise TransitionNotAllowedError(kind.value, current.value, target.value, "No handler for this transition")
            return handler

        return await self._execute(kind, entity_id, actor, payload, resolve)

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def receive_invoice(self, data: Dict[str, Any], actor: str) -> Dict[str, Any]:
        errors = validate_invoice_fields(data)
        if errors:
            raise ValidationFailedError("Invalid invoice", errors=errors)

        invoice_number = data["invoice_number"].strip()
        duplicate = await self.invoices.find_duplicate(data["vendor_id"], invoice_number)
        if duplicate:
            raise ValidationFailedError(
                f"Invoice {invoice_number} already exists for this vendor",
                details={"duplicate_id": duplicate["_id"]}
            )

        if data.get("po_id"):
            po = await self.store.purchase_orders.find_one({"_id": data["po_id"]})
            if not po:
                raise ValidationFailedError(f"Purchase order {data['po_id']} not found")
            if po.get("status") == PO_VOID:
                raise ValidationFailedError(f"Purchase order {po.get('po_number', data['po_id'])} is void")
            if data.get("job_id") and po.get("job_id") != data["job_id"]:
                raise ValidationFailedError("Purchase order belongs to a different job")

        now = self.store.now()
        invoice = {
            "_id": new_id(),
            "job_id": data.get("job_id"),
            "vendor_id": data["vendor_id"],
            "po_id": data.get("po_id"),
            "invoice_number": invoice_number,
            "invoice_date": data.get("invoice_date"),
            "due_date": data.get("due_date"),
            "amount": to_float(data["amount"]),
            "status": InvoiceStatus.RECEIVED.value,
            "version": 1,
            "billed_amount": 0.0,
            "paid_amount": 0.0,
            "draw_id": None,
            "archived": False,
            "deleted_at": None,
            "notes": data.get("notes"),
            "document_url": data.get("document_url"),
            "created_at": now,
            "created_by": actor,
            "updated_at": now,
        }
        try:
            await self.store.invoices.insert_one(invoice)
        except PyMongoError as e:
            raise wrap_database_error(e)

        logger.info(f"[TRANSITION] {actor} received invoice {invoice_number} ({invoice['_id']})")
        if self.activity is not None:
            await self.activity.log(EntityType.INVOICE.value, invoice["_id"], "received", actor, {"amount": invoice["amount"]})
        return invoice

    async def get_invoice_detail(self, invoice_id: str) -> Dict[str, Any]:
        invoice = await self.store.get_invoice(invoice_id)
        return {
            "invoice": invoice,
            "allocations": await self.store.list_allocations(invoice_id),
            "draw_allocations": await self.store.list_draw_allocations(invoice_id=invoice_id),
            "lock": await self.locks.check_lock(EntityType.INVOICE.value, invoice_id),
            "undo": await self.journal.available(EntityType.INVOICE.value, invoice_id),
        }

    async def update_invoice(self, invoice_id: str, changes: Dict[str, Any], actor: str, expected_version: Optional[int] = None) -> TransitionResult:
        payload = {"changes": changes, "expected_version": expected_version}
        return await self._execute(EntityType.INVOICE, invoice_id, actor, payload, self._fixed(self.invoices.edit_handler()))

    async def set_allocations(self, invoice_id: str, allocations: List[Dict[str, Any]], actor: str, expected_version: Optional[int] = None) -> TransitionResult:
        payload = {"allocations": allocations, "expected_version": expected_version}
        return await self._execute(EntityType.INVOICE, invoice_id, actor, payload, self._fixed(self.invoices.allocate_handler()))

    async def close_out_invoice(self, invoice_id: str, reason: str, actor: str) -> TransitionResult:
        return await self.request_transition(EntityType.INVOICE.value, invoice_id, InvoiceStatus.PAID.value, {"reason": reason}, actor)

    async def unarchive_invoice(self, invoice_id: str, actor: str) -> TransitionResult:
        return await self._execute(EntityType.INVOICE, invoice_id, actor, {}, self._fixed(self.invoices.unarchive_handler()))

    async def delete_invoice(self, invoice_id: str, actor: str) -> TransitionResult:
        return await self._execute(EntityType.INVOICE, invoice_id, actor, {}, self._fixed(self.invoices.delete_handler()))

    async def _bulk_transition(self, invoice_ids: List[str], target: InvoiceStatus, payload: Dict[str, Any], actor: str) -> Dict[str, Any]:
        """
        One independent transition per invoice. A failure (or a PO overage
        without override) is reported per invoice and never stops the batch.
        """
        if not invoice_ids:
            raise ValidationFailedError("No invoices supplied")

        succeeded, failed, warnings = [], [], []
        for invoice_id in dict.fromkeys(invoice_ids):
            try:
                result = await self.request_transition(EntityType.INVOICE.value, invoice_id, target.value, dict(payload), actor)
            except LedgerError as e:
                failed.append({"invoice_id": invoice_id, **e.to_dict()})
                continue
            if result.success:
                succeeded.append(invoice_id)
                warnings.extend(result.warnings)
            else:
                failed.append({"invoice_id": invoice_id, **result.po_overage})

        logger.info(
            f"[TRANSITION] {actor} bulk {target.value}: {len(succeeded)} succeeded, {len(failed)} failed"
        )
        return {"succeeded": succeeded, "failed": failed, "warnings": warnings}

    async def bulk_approve(self, invoice_ids: List[str], actor: str, override_po_overage: bool = False) -> Dict[str, Any]:
        return await self._bulk_transition(
            invoice_ids, InvoiceStatus.APPROVED, {"override_po_overage": override_po_overage}, actor
        )

    async def bulk_deny(self, invoice_ids: List[str], reason: str, actor: str) -> Dict[str, Any]:
        if not (reason or "").strip():
            raise ValidationFailedError("A denial reason is required")
        return await self._bulk_transition(invoice_ids, InvoiceStatus.DENIED, {"reason": reason}, actor)

    async def bulk_add_to_draw(self, invoice_ids: List[str], draw_id: str, actor: str) -> Dict[str, Any]:
        if not invoice_ids:
            raise ValidationFailedError("No invoices supplied")
        outcome = await self.add_invoices_to_draw(draw_id, [{"invoice_id": i} for i in dict.fromkeys(invoice_ids)], actor)
        return {
            "succeeded": [invoice["_id"] for invoice in outcome["added"]],
            "failed": outcome["errors"],
            "warnings": outcome["warnings"],
            "draw": outcome["draw"],
        }

    # =========================================================================
    # DRAWS
    # =========================================================================

    async def create_draw(self, job_id: str, actor: str, period_end: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
        try:
            draw = await self.draws.create(job_id, actor, period_end=period_end, notes=notes)
        except PyMongoError as e:
            raise wrap_database_error(e)
        if self.activity is not None:
            await self.activity.log(EntityType.DRAW.value, draw["_id"], "created", actor, {"draw_number": draw["draw_number"]})
        return draw

    async def get_draw_detail(self, draw_id: str) -> Dict[str, Any]:
        draw = await self.store.get_draw(draw_id)
        return {
            "draw": draw,
            "draw_allocations": await self.store.list_draw_allocations(draw_id=draw_id),
            "change_order_billings": await self.store.list_co_billings(draw_id),
            "lock": await self.locks.check_lock(EntityType.DRAW.value, draw_id),
            "undo": await self.journal.available(EntityType.DRAW.value, draw_id),
        }

    async def add_invoices_to_draw(self, draw_id: str, items: List[Dict[str, Any]], actor: str) -> Dict[str, Any]:
        """
        Add approved invoices to a draft draw, one transition per invoice.

        items: [{"invoice_id": ..., "billed_amount": optional partial amount}]
        """
        draw = await self.store.get_draw(draw_id)
        if draw["status"] != DrawStatus.DRAFT.value:
            raise ValidationFailedError(f"Invoices can only be added to draft draws (draw is {draw['status']})")
        if not items:
            raise ValidationFailedError("No invoices supplied")

        added, errors, warnings = [], [], []
        for item in items:
            payload = {"draw_id": draw_id, "billed_amount": item.get("billed_amount")}
            try:
                result = await self.request_transition(
                    EntityType.INVOICE.value, item["invoice_id"], InvoiceStatus.IN_DRAW.value, payload, actor
                )
                added.append(result.entity)
                warnings.extend(result.warnings)
            except LedgerError as e:
                errors.append({"invoice_id": item["invoice_id"], **e.to_dict()})

        return {
            "draw": await self.store.get_draw(draw_id),
            "added": added,
            "errors": errors,
            "warnings": warnings,
        }

    async def remove_invoice_from_draw(self, draw_id: str, invoice_id: str, actor: str) -> TransitionResult:
        return await self.request_transition(
            EntityType.INVOICE.value, invoice_id, InvoiceStatus.APPROVED.value, {"draw_id": draw_id}, actor
        )

    async def submit_draw(self, draw_id: str, actor: str, expected_version: Optional[int] = None) -> TransitionResult:
        return await self.request_transition(
            EntityType.DRAW.value, draw_id, DrawStatus.SUBMITTED.value, {"expected_version": expected_version}, actor
        )

    async def unsubmit_draw(self, draw_id: str, reason: str, actor: str) -> TransitionResult:
        return await self.request_transition(EntityType.DRAW.value, draw_id, DrawStatus.DRAFT.value, {"reason": reason}, actor)

    async def fund_draw(self, draw_id: str, actor: str, funded_amount: Optional[float] = None) -> TransitionResult:
        return await self.request_transition(
            EntityType.DRAW.value, draw_id, DrawStatus.FUNDED.value, {"funded_amount": funded_amount}, actor
        )

    async def recalculate_draw(self, draw_id: str) -> float:
        """Idempotent: recomputes from source rows only"""
        await self.store.get_draw(draw_id)
        try:
            return await self.store.recompute_draw_total(draw_id)
        except PyMongoError as e:
            raise wrap_database_error(e)

    async def bill_change_order(self, draw_id: str, change_order_id: str, amount: float, actor: str) -> TransitionResult:
        payload = {"change_order_id": change_order_id, "amount": amount}
        return await self._execute(EntityType.DRAW, draw_id, actor, payload, self._fixed(self.draws.bill_change_order_handler()))

    async def unbill_change_order(self, draw_id: str, change_order_id: str, actor: str) -> TransitionResult:
        payload = {"change_order_id": change_order_id}
        return await self._execute(EntityType.DRAW, draw_id, actor, payload, self._fixed(self.draws.unbill_change_order_handler()))

    async def update_g702(self, draw_id: str, overrides: Dict[str, Any], actor: str) -> TransitionResult:
        return await self._execute(EntityType.DRAW, draw_id, actor, {"overrides": overrides}, self._fixed(self.draws.g702_handler()))

    async def delete_draw(self, draw_id: str, actor: str) -> TransitionResult:
        return await self._execute(EntityType.DRAW, draw_id, actor, {}, self._fixed(self.draws.delete_handler()))

    # =========================================================================
    # LOCKS
    # =========================================================================

    async def check_lock(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self.locks.check_lock(entity_type, entity_id)

    async def acquire_lock(self, entity_type: str, entity_id: str, holder: str) -> Dict[str, Any]:
        if not holder:
            raise ValidationFailedError("performed_by is required")
        try:
            kind = EntityType(entity_type)
        except ValueError:
            raise ValidationFailedError(f"Unknown entity type '{entity_type}'")
        await self._load(kind, entity_id)
        return await self.locks.acquire(entity_type, entity_id, holder)

    async def release_lock(self, lock_id: str, by: str) -> Dict[str, Any]:
        return await self.locks.release(lock_id, by)

    # =========================================================================
    # UNDO
    # =========================================================================

    async def get_available_undo(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        return await self.journal.available(entity_type, entity_id)

    async def execute_undo(self, entry_id: str, actor: str) -> Dict[str, Any]:
        if not actor:
            raise ValidationFailedError("performed_by is required")
        entry = await self.journal.get_entry(entry_id)
        acquired = await self.locks.acquire(entry["entity_type"], entry["entity_id"], actor)
        try:
            try:
                result = await self.journal.execute(entry_id, actor)
            except PyMongoError as e:
                raise wrap_database_error(e)
        finally:
            if acquired["created"]:
                try:
                    await self.locks.release(acquired["lock"]["_id"], actor)
                except LedgerError as e:
                    logger.warning(f"[LOCK] Could not release after undo: {e.message}")

        warnings = []
        if self.activity is not None:
            logged = await self.activity.log(
                entry["entity_type"], entry["entity_id"], "undo", actor, {"undone_action": entry["action"]}
            )
            if not logged:
                warnings.append("Activity log for undo could not be written")
        if self.broadcaster is not None:
            self.broadcaster.publish(f"{entry['entity_type']}.undo", {
                "entity_type": entry["entity_type"],
                "entity_id": entry["entity_id"],
                "undone_action": entry["action"],
                "performed_by": actor,
            })
        result["warnings"] = warnings
        return result


def build_orchestrator(
    db: AsyncIOMotorDatabase,
    client: Optional[AsyncIOMotorClient] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
    stamper: Optional[DocumentStamper] = None,
    broadcaster: Optional[Broadcaster] = None,
    activity=None
) -> LifecycleOrchestrator:
    settings = settings or Settings()
    store = LedgerStore(db, client=client, use_transactions=settings.use_transactions, clock=clock)
    locks = LockManager(store, ttl_seconds=settings.lock_ttl_seconds)
    journal = UndoJournal(store, window_seconds=settings.undo_window_seconds)
    return LifecycleOrchestrator(
        store,
        locks,
        journal,
        stamper=stamper,
        broadcaster=broadcaster,
        activity=activity,
    )
