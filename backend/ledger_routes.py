"""
INVOICE & DRAW LEDGER: API ROUTES

Routes for:
- Invoices: receive, edit, code, transition, bulk approve/deny/add-to-draw,
  close-out, unarchive, delete
- Draws: create, add/remove invoices, submit, unsubmit, fund, recalculate,
  change-order billing, G702/G703
- Purchase orders, PO line change orders, job change orders
- Advisory locks and undo
- Job reconciliation

Every mutating call names its actor in `performed_by`.
Engine failures are LedgerError and are rendered by ledger_error_handler.
"""

from fastapi import APIRouter, Depends, Request, Query, status
from fastapi.responses import JSONResponse
from bson import ObjectId, Decimal128
from datetime import datetime
from typing import Any
import logging

from audit_service import ActivityService
from ledger_core.commitments import CommitmentService
from ledger_core.errors import LedgerError
from ledger_core.g702 import build_g702
from ledger_core.integrity_job import JobReconciliationJob
from ledger_core.orchestrator import LifecycleOrchestrator, TransitionResult
from ledger_models import (
    InvoiceCreate, InvoiceUpdate, AllocationsUpdate, TransitionRequest, CloseOutRequest, ActorRequest,
    DrawCreate, AddInvoicesRequest, RemoveInvoiceRequest, SubmitDrawRequest, UnsubmitDrawRequest,
    FundDrawRequest, ChangeOrderBillingRequest, G702Update,
    BulkApproveRequest, BulkDenyRequest, BulkAddToDrawRequest,
    PurchaseOrderCreate, ChangeOrderCreate, ChangeOrderStatusUpdate, PoChangeOrderCreate, RejectRequest, LockRequest,
)

logger = logging.getLogger(__name__)


def serialize_doc(obj: Any) -> Any:
    """Recursively serialize MongoDB objects for JSON response (_id -> id)"""
    if isinstance(obj, ObjectId):
        return str(obj)
    elif isinstance(obj, Decimal128):
        return float(obj.to_decimal())
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {("id" if k == "_id" else k): serialize_doc(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [serialize_doc(item) for item in obj]
    else:
        return obj


def transition_response(result: TransitionResult) -> JSONResponse:
    """Render a TransitionResult; the PO overage soft block is a 409 with the overage payload"""
    if result.status == "po_overage":
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "success": False,
                "error": serialize_doc(result.po_overage),
                "entity": serialize_doc(result.entity),
            }
        )
    return JSONResponse(content={
        "success": True,
        "action": result.action,
        "entity": serialize_doc(result.entity),
        "warnings": result.warnings,
        "undo": serialize_doc(result.undo),
    })


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: {exc.code.value} {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": serialize_doc(exc.to_dict())}
    )


class LedgerServices:
    """Services shared by the ledger routes; attached to app.state.ledger"""

    def __init__(self, orchestrator: LifecycleOrchestrator, activity: ActivityService):
        self.orchestrator = orchestrator
        self.activity = activity
        self.store = orchestrator.store
        self.commitments = CommitmentService(orchestrator.store)


def get_services(request: Request) -> LedgerServices:
    return request.app.state.ledger


# Router
ledger_router = APIRouter(prefix="/api", tags=["Invoice & Draw Ledger"])


# ============================================
# INVOICES
# ============================================

@ledger_router.post("/invoices", status_code=status.HTTP_201_CREATED)
async def receive_invoice(body: InvoiceCreate, services: LedgerServices = Depends(get_services)):
    """Record a received invoice (status: received)"""
    data = body.model_dump(exclude={"performed_by"})
    invoice = await services.orchestrator.receive_invoice(data, body.performed_by)
    return {"success": True, "invoice": serialize_doc(invoice)}


@ledger_router.post("/invoices/bulk/approve")
async def bulk_approve_invoices(body: BulkApproveRequest, services: LedgerServices = Depends(get_services)):
    """Approve many invoices; each one succeeds or fails on its own"""
    outcome = await services.orchestrator.bulk_approve(
        body.invoice_ids, body.performed_by, override_po_overage=body.override_po_overage
    )
    return serialize_doc({"success": not outcome["failed"], **outcome})


@ledger_router.post("/invoices/bulk/deny")
async def bulk_deny_invoices(body: BulkDenyRequest, services: LedgerServices = Depends(get_services)):
    outcome = await services.orchestrator.bulk_deny(body.invoice_ids, body.reason, body.performed_by)
    return serialize_doc({"success": not outcome["failed"], **outcome})


@ledger_router.post("/invoices/bulk/add-to-draw")
async def bulk_add_invoices_to_draw(body: BulkAddToDrawRequest, services: LedgerServices = Depends(get_services)):
    outcome = await services.orchestrator.bulk_add_to_draw(body.invoice_ids, body.draw_id, body.performed_by)
    return serialize_doc({"success": not outcome["failed"], **outcome})


@ledger_router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, services: LedgerServices = Depends(get_services)):
    return serialize_doc(await services.orchestrator.get_invoice_detail(invoice_id))


@ledger_router.put("/invoices/{invoice_id}")
async def update_invoice(invoice_id: str, body: InvoiceUpdate, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.update_invoice(
        invoice_id, body.changes, body.performed_by, expected_version=body.expected_version
    )
    return transition_response(result)


@ledger_router.put("/invoices/{invoice_id}/allocations")
async def set_invoice_allocations(invoice_id: str, body: AllocationsUpdate, services: LedgerServices = Depends(get_services)):
    """Replace an invoice's cost-code coding"""
    allocations = [row.model_dump() for row in body.allocations]
    result = await services.orchestrator.set_allocations(
        invoice_id, allocations, body.performed_by, expected_version=body.expected_version
    )
    return transition_response(result)


@ledger_router.post("/invoices/{invoice_id}/transition")
async def transition_invoice(invoice_id: str, body: TransitionRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.request_transition(
        "invoice", invoice_id, body.target_status, body.payload(), body.performed_by
    )
    return transition_response(result)


@ledger_router.post("/invoices/{invoice_id}/close-out")
async def close_out_invoice(invoice_id: str, body: CloseOutRequest, services: LedgerServices = Depends(get_services)):
    """Mark an invoice paid outside any draw and write off its remaining balance"""
    result = await services.orchestrator.close_out_invoice(invoice_id, body.reason, body.performed_by)
    return transition_response(result)


@ledger_router.post("/invoices/{invoice_id}/unarchive")
async def unarchive_invoice(invoice_id: str, body: ActorRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.unarchive_invoice(invoice_id, body.performed_by)
    return transition_response(result)


@ledger_router.delete("/invoices/{invoice_id}")
async def delete_invoice(
    invoice_id: str,
    performed_by: str = Query(...),
    services: LedgerServices = Depends(get_services)
):
    """Soft delete; ledger effects of the invoice are reversed"""
    result = await services.orchestrator.delete_invoice(invoice_id, performed_by)
    return transition_response(result)


@ledger_router.get("/invoices/{invoice_id}/activity")
async def get_invoice_activity(
    invoice_id: str,
    limit: int = Query(100, ge=1, le=500),
    services: LedgerServices = Depends(get_services)
):
    await services.store.get_invoice(invoice_id, include_deleted=True)
    rows = await services.activity.get_activity("invoice", invoice_id, limit=limit)
    return {"invoice_id": invoice_id, "activity": serialize_doc(rows)}


# ============================================
# DRAWS
# ============================================

@ledger_router.post("/draws", status_code=status.HTTP_201_CREATED)
async def create_draw(body: DrawCreate, services: LedgerServices = Depends(get_services)):
    draw = await services.orchestrator.create_draw(
        body.job_id, body.performed_by, period_end=body.period_end, notes=body.notes
    )
    return {"success": True, "draw": serialize_doc(draw)}


@ledger_router.get("/draws/{draw_id}")
async def get_draw(draw_id: str, services: LedgerServices = Depends(get_services)):
    return serialize_doc(await services.orchestrator.get_draw_detail(draw_id))


@ledger_router.post("/draws/{draw_id}/add-invoices")
async def add_invoices_to_draw(draw_id: str, body: AddInvoicesRequest, services: LedgerServices = Depends(get_services)):
    """Per-invoice outcome; one failing invoice does not block the others"""
    items = [item.model_dump() for item in body.invoices]
    result = await services.orchestrator.add_invoices_to_draw(draw_id, items, body.performed_by)
    return {"success": not result["errors"], **serialize_doc(result)}


@ledger_router.post("/draws/{draw_id}/remove-invoice")
async def remove_invoice_from_draw(draw_id: str, body: RemoveInvoiceRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.remove_invoice_from_draw(draw_id, body.invoice_id, body.performed_by)
    return transition_response(result)


@ledger_router.post("/draws/{draw_id}/submit")
async def submit_draw(draw_id: str, body: SubmitDrawRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.submit_draw(draw_id, body.performed_by, expected_version=body.expected_version)
    return transition_response(result)


@ledger_router.post("/draws/{draw_id}/unsubmit")
async def unsubmit_draw(draw_id: str, body: UnsubmitDrawRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.unsubmit_draw(draw_id, body.reason, body.performed_by)
    return transition_response(result)


@ledger_router.post("/draws/{draw_id}/fund")
async def fund_draw(draw_id: str, body: FundDrawRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.fund_draw(draw_id, body.performed_by, funded_amount=body.funded_amount)
    return transition_response(result)


@ledger_router.post("/draws/{draw_id}/recalculate")
async def recalculate_draw(draw_id: str, services: LedgerServices = Depends(get_services)):
    total = await services.orchestrator.recalculate_draw(draw_id)
    return {"success": True, "draw_id": draw_id, "total_amount": total}


@ledger_router.post("/draws/{draw_id}/change-orders")
async def bill_change_order(draw_id: str, body: ChangeOrderBillingRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.bill_change_order(draw_id, body.change_order_id, body.amount, body.performed_by)
    return transition_response(result)


@ledger_router.delete("/draws/{draw_id}/change-orders/{change_order_id}")
async def unbill_change_order(
    draw_id: str,
    change_order_id: str,
    performed_by: str = Query(...),
    services: LedgerServices = Depends(get_services)
):
    result = await services.orchestrator.unbill_change_order(draw_id, change_order_id, performed_by)
    return transition_response(result)


@ledger_router.get("/draws/{draw_id}/g702")
async def get_g702(draw_id: str, services: LedgerServices = Depends(get_services)):
    return serialize_doc(await build_g702(services.store, draw_id))


@ledger_router.put("/draws/{draw_id}/g702")
async def update_g702(draw_id: str, body: G702Update, services: LedgerServices = Depends(get_services)):
    await services.orchestrator.update_g702(draw_id, body.overrides, body.performed_by)
    return {"success": True, **serialize_doc(await build_g702(services.store, draw_id))}


@ledger_router.delete("/draws/{draw_id}")
async def delete_draw(
    draw_id: str,
    performed_by: str = Query(...),
    services: LedgerServices = Depends(get_services)
):
    """Delete a draft draw; its invoices return to approved"""
    result = await services.orchestrator.delete_draw(draw_id, performed_by)
    return transition_response(result)


# ============================================
# PURCHASE ORDERS & CHANGE ORDERS
# ============================================

@ledger_router.post("/purchase-orders", status_code=status.HTTP_201_CREATED)
async def issue_purchase_order(body: PurchaseOrderCreate, services: LedgerServices = Depends(get_services)):
    po = await services.commitments.issue_purchase_order(
        body.job_id,
        body.vendor_id,
        body.po_number,
        [line.model_dump() for line in body.line_items],
        body.performed_by
    )
    return {"success": True, "purchase_order": serialize_doc(po)}


@ledger_router.post("/purchase-orders/{po_id}/void")
async def void_purchase_order(po_id: str, body: ActorRequest, services: LedgerServices = Depends(get_services)):
    po = await services.commitments.void_purchase_order(po_id, body.performed_by)
    return {"success": True, "purchase_order": serialize_doc(po)}


@ledger_router.post("/purchase-orders/{po_id}/change-orders", status_code=status.HTTP_201_CREATED)
async def create_po_change_order(po_id: str, body: PoChangeOrderCreate, services: LedgerServices = Depends(get_services)):
    """Propose line item changes; nothing moves until approval"""
    change_order = await services.commitments.create_po_change_order(
        po_id,
        [line.model_dump() for line in body.line_items],
        body.performed_by,
        description=body.description,
        reason=body.reason
    )
    return {"success": True, "change_order": serialize_doc(change_order)}


@ledger_router.post("/purchase-orders/{po_id}/change-orders/{change_order_id}/approve")
async def approve_po_change_order(po_id: str, change_order_id: str, body: ActorRequest, services: LedgerServices = Depends(get_services)):
    change_order = await services.commitments.approve_po_change_order(po_id, change_order_id, body.performed_by)
    return {"success": True, "change_order": serialize_doc(change_order)}


@ledger_router.post("/purchase-orders/{po_id}/change-orders/{change_order_id}/reject")
async def reject_po_change_order(po_id: str, change_order_id: str, body: RejectRequest, services: LedgerServices = Depends(get_services)):
    change_order = await services.commitments.reject_po_change_order(po_id, change_order_id, body.reason, body.performed_by)
    return {"success": True, "change_order": serialize_doc(change_order)}


@ledger_router.post("/change-orders", status_code=status.HTTP_201_CREATED)
async def record_change_order(body: ChangeOrderCreate, services: LedgerServices = Depends(get_services)):
    change_order = await services.commitments.record_change_order(
        body.job_id,
        body.change_order_number,
        body.amount,
        body.performed_by,
        title=body.title,
        status=body.status
    )
    return {"success": True, "change_order": serialize_doc(change_order)}


@ledger_router.post("/change-orders/{change_order_id}/status")
async def set_change_order_status(change_order_id: str, body: ChangeOrderStatusUpdate, services: LedgerServices = Depends(get_services)):
    change_order = await services.commitments.set_change_order_status(
        change_order_id, body.status, body.performed_by, reason=body.reason
    )
    return {"success": True, "change_order": serialize_doc(change_order)}


# ============================================
# LOCKS
# ============================================

@ledger_router.get("/locks")
async def list_locks(services: LedgerServices = Depends(get_services)):
    locks = await services.orchestrator.locks.list_locks()
    return {"locks": serialize_doc(locks)}


@ledger_router.post("/locks/{lock_id}/force-release")
async def force_release_lock(lock_id: str, body: ActorRequest, services: LedgerServices = Depends(get_services)):
    return await services.orchestrator.locks.force_release(lock_id, body.performed_by)


@ledger_router.delete("/locks/entity/{entity_type}/{entity_id}")
async def release_entity_lock(
    entity_type: str,
    entity_id: str,
    performed_by: str = Query(...),
    services: LedgerServices = Depends(get_services)
):
    released = await services.orchestrator.locks.release_entity(entity_type, entity_id, performed_by)
    return {"success": True, "released": released}


@ledger_router.get("/locks/{entity_type}/{entity_id}")
async def check_lock(entity_type: str, entity_id: str, services: LedgerServices = Depends(get_services)):
    lock = await services.orchestrator.check_lock(entity_type, entity_id)
    return {"locked": lock is not None, "lock": serialize_doc(lock)}


@ledger_router.post("/locks/{entity_type}/{entity_id}")
async def acquire_lock(entity_type: str, entity_id: str, body: LockRequest, services: LedgerServices = Depends(get_services)):
    result = await services.orchestrator.acquire_lock(entity_type, entity_id, body.performed_by)
    return serialize_doc(result)


@ledger_router.delete("/locks/{lock_id}")
async def release_lock(
    lock_id: str,
    performed_by: str = Query(...),
    services: LedgerServices = Depends(get_services)
):
    return await services.orchestrator.release_lock(lock_id, performed_by)


# ============================================
# UNDO
# ============================================

@ledger_router.get("/undo/{entity_type}/{entity_id}")
async def get_available_undo(entity_type: str, entity_id: str, services: LedgerServices = Depends(get_services)):
    return serialize_doc(await services.orchestrator.get_available_undo(entity_type, entity_id))


@ledger_router.post("/undo/{entry_id}/execute")
async def execute_undo(entry_id: str, body: ActorRequest, services: LedgerServices = Depends(get_services)):
    return serialize_doc(await services.orchestrator.execute_undo(entry_id, body.performed_by))


# ============================================
# JOBS
# ============================================

@ledger_router.get("/jobs/{job_id}/reconciliation")
async def reconcile_job(job_id: str, services: LedgerServices = Depends(get_services)):
    """Report stored aggregates that disagree with base rows (read only)"""
    return await JobReconciliationJob(services.store).run(job_id)


@ledger_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": "draw-ledger",
    }
