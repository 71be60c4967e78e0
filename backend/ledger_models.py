from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

# ============================================
# INVOICE MODELS
# ============================================
class InvoiceCreate(BaseModel):
    vendor_id: str
    invoice_number: str
    amount: float
    job_id: Optional[str] = None
    po_id: Optional[str] = None
    invoice_date: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None
    document_url: Optional[str] = None
    performed_by: str

class InvoiceUpdate(BaseModel):
    changes: Dict[str, Any]
    expected_version: Optional[int] = None
    performed_by: str

class AllocationInput(BaseModel):
    cost_code_id: str
    amount: float
    po_line_item_id: Optional[str] = None
    notes: Optional[str] = None

class AllocationsUpdate(BaseModel):
    allocations: List[AllocationInput]
    expected_version: Optional[int] = None
    performed_by: str

class TransitionRequest(BaseModel):
    """Body for POST /invoices/{id}/transition"""
    target_status: str
    performed_by: str
    expected_version: Optional[int] = None
    allocations: Optional[List[AllocationInput]] = None
    override_po_overage: bool = False
    draw_id: Optional[str] = None
    billed_amount: Optional[float] = None
    reason: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"target_status", "performed_by"}, exclude_none=True)
        return data

class CloseOutRequest(BaseModel):
    reason: str
    performed_by: str

class ActorRequest(BaseModel):
    performed_by: str

class BulkApproveRequest(BaseModel):
    invoice_ids: List[str] = Field(min_length=1)
    override_po_overage: bool = False
    performed_by: str

class BulkDenyRequest(BaseModel):
    invoice_ids: List[str] = Field(min_length=1)
    reason: str
    performed_by: str

class BulkAddToDrawRequest(BaseModel):
    invoice_ids: List[str] = Field(min_length=1)
    draw_id: str
    performed_by: str

# ============================================
# DRAW MODELS
# ============================================
class DrawCreate(BaseModel):
    job_id: str
    period_end: Optional[str] = None
    notes: Optional[str] = None
    performed_by: str

class DrawInvoiceItem(BaseModel):
    invoice_id: str
    billed_amount: Optional[float] = None

class AddInvoicesRequest(BaseModel):
    invoices: List[DrawInvoiceItem] = Field(min_length=1)
    performed_by: str

class RemoveInvoiceRequest(BaseModel):
    invoice_id: str
    performed_by: str

class SubmitDrawRequest(BaseModel):
    performed_by: str
    expected_version: Optional[int] = None

class UnsubmitDrawRequest(BaseModel):
    reason: str
    performed_by: str

class FundDrawRequest(BaseModel):
    performed_by: str
    funded_amount: Optional[float] = None

class ChangeOrderBillingRequest(BaseModel):
    change_order_id: str
    amount: float
    performed_by: str

class G702Update(BaseModel):
    overrides: Dict[str, Any]
    performed_by: str

# ============================================
# COMMITMENT MODELS
# ============================================
class PurchaseOrderLine(BaseModel):
    cost_code_id: str
    amount: float
    description: Optional[str] = None

class PurchaseOrderCreate(BaseModel):
    job_id: str
    vendor_id: str
    po_number: str
    line_items: List[PurchaseOrderLine]
    performed_by: str

class ChangeOrderCreate(BaseModel):
    job_id: str
    change_order_number: str
    amount: float
    title: Optional[str] = None
    status: str = "approved"
    performed_by: str

class ChangeOrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None
    performed_by: str

class PoChangeOrderLine(BaseModel):
    po_line_item_id: Optional[str] = None
    cost_code_id: Optional[str] = None
    amount: float
    description: Optional[str] = None

class PoChangeOrderCreate(BaseModel):
    line_items: List[PoChangeOrderLine] = Field(min_length=1)
    description: Optional[str] = None
    reason: Optional[str] = None
    performed_by: str

class RejectRequest(BaseModel):
    reason: str
    performed_by: str

# ============================================
# LOCK MODELS
# ============================================
class LockRequest(BaseModel):
    performed_by: str
