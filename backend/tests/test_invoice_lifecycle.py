"""
Invoice lifecycle tests

Covers:
- Coding and approval with budget / PO effects
- PO overage soft block and override
- Credits, version conflicts, illegal edges
- Edit, allocation, close-out, unarchive, deny, soft delete
- Best-effort side effects (stamping, activity, broadcast)
"""
import pytest

from ledger_core.collaborators import StampingError, DocumentStamper
from ledger_core.commitments import CommitmentService
from ledger_core.errors import (
    ValidationFailedError,
    TransitionNotAllowedError,
    VersionConflictError,
    NotFoundError,
)
from ledger_core.orchestrator import build_orchestrator

from conftest import ACTOR, LedgerFactory

SPLIT = [
    {"cost_code_id": "03-300", "amount": 6000.0},
    {"cost_code_id": "09-900", "amount": 4000.0},
]


class TestApproval:
    """needs_approval -> approved"""

    @pytest.mark.asyncio
    async def test_split_approval_bills_each_cost_code(self, ledger, store):
        invoice = await ledger.approved(10000.0, SPLIT)

        assert invoice["status"] == "approved"
        assert invoice["approved_by"] == ACTOR
        assert invoice["version"] == 3

        line_a = await ledger.budget_line("03-300")
        line_b = await ledger.budget_line("09-900")
        assert line_a["billed_amount"] == 6000.0
        assert line_b["billed_amount"] == 4000.0

        allocations = await store.list_allocations(invoice["_id"])
        assert [a["amount"] for a in allocations] == [6000.0, 4000.0]

    @pytest.mark.asyncio
    async def test_po_overage_soft_block_then_override(self, ledger, orchestrator, store):
        po = await ledger.purchase_order([{"cost_code_id": "03-300", "amount": 5000.0}])
        line_id = po["line_items"][0]["_id"]
        await store.po_line_items.update_one({"_id": line_id}, {"$set": {"invoiced_amount": 4500.0}})

        invoice = await ledger.coded(1000.0, [{"cost_code_id": "03-300", "amount": 1000.0}], po_id=po["_id"])
        allocations = await store.list_allocations(invoice["_id"])
        assert allocations[0]["po_line_item_id"] == line_id

        blocked = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert blocked.status == "po_overage"
        assert blocked.error_code == "PO_OVERAGE"
        assert blocked.po_overage["overage_amount"] == 500.0
        assert blocked.po_overage["lines"][0]["remaining_amount"] == 500.0

        line = await store.get_po_line_item(line_id)
        assert line["invoiced_amount"] == 4500.0
        assert (await store.get_invoice(invoice["_id"]))["status"] == "needs_approval"

        approved = await orchestrator.request_transition(
            "invoice", invoice["_id"], "approved", {"override_po_overage": True}, ACTOR
        )
        assert approved.success
        assert approved.entity["po_override"] is True
        assert any("500.00" in w for w in approved.warnings)

        line = await store.get_po_line_item(line_id)
        assert line["invoiced_amount"] == 5500.0

    @pytest.mark.asyncio
    async def test_unbalanced_allocations_rejected(self, ledger, orchestrator, store):
        invoice = await ledger.coded(1000.0, [{"cost_code_id": "03-300", "amount": 600.0}])

        with pytest.raises(ValidationFailedError) as exc_info:
            await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert exc_info.value.details["difference"] == 400.0
        assert (await store.get_invoice(invoice["_id"]))["status"] == "needs_approval"

    @pytest.mark.asyncio
    async def test_uncoded_invoice_cannot_be_approved(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)

        with pytest.raises(ValidationFailedError):
            await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)

    @pytest.mark.asyncio
    async def test_first_coding_at_approval(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)

        result = await orchestrator.request_transition(
            "invoice", invoice["_id"], "approved",
            {"allocations": [{"cost_code_id": "03-300", "amount": 1000.0}]}, ACTOR
        )
        assert result.success
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 1000.0

    @pytest.mark.asyncio
    async def test_unbalanced_first_coding_leaves_nothing_behind(self, ledger, orchestrator, store):
        invoice = await ledger.receive(10000.0)
        await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)

        with pytest.raises(ValidationFailedError) as exc_info:
            await orchestrator.request_transition(
                "invoice", invoice["_id"], "approved",
                {"allocations": [{"cost_code_id": "03-300", "amount": 6000.0}]}, ACTOR
            )
        assert exc_info.value.details["difference"] == 4000.0

        assert await store.list_allocations(invoice["_id"]) == []
        assert (await store.get_invoice(invoice["_id"]))["status"] == "needs_approval"
        assert await ledger.budget_line("03-300") is None

        undo = await orchestrator.get_available_undo("invoice", invoice["_id"])
        assert undo["entry"]["action"] == "submit_for_approval"
        assert await store.undo_journal.count_documents({"entity_id": invoice["_id"]}) == 1

    @pytest.mark.asyncio
    async def test_unapprove_reverses_billing(self, ledger, orchestrator, store):
        invoice = await ledger.approved(10000.0, SPLIT)

        result = await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)
        assert result.entity["status"] == "needs_approval"
        assert result.entity["approved_at"] is None
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 0.0
        assert (await ledger.budget_line("09-900"))["billed_amount"] == 0.0
        assert len(await store.list_allocations(invoice["_id"])) == 2

    @pytest.mark.asyncio
    async def test_credit_invoice(self, ledger):
        invoice = await ledger.approved(-500.0, [{"cost_code_id": "03-300", "amount": -500.0}])
        assert invoice["status"] == "approved"
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 0.0

    @pytest.mark.asyncio
    async def test_credit_allocation_sign_mismatch(self, ledger):
        with pytest.raises(ValidationFailedError) as exc_info:
            await ledger.coded(-500.0, [{"cost_code_id": "03-300", "amount": 500.0}])
        assert "credit" in exc_info.value.details["errors"][0]

    @pytest.mark.asyncio
    async def test_illegal_edge(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        with pytest.raises(TransitionNotAllowedError):
            await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)

    @pytest.mark.asyncio
    async def test_stale_expected_version(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        with pytest.raises(VersionConflictError) as exc_info:
            await orchestrator.request_transition(
                "invoice", invoice["_id"], "needs_approval", {"expected_version": 7}, ACTOR
            )
        assert exc_info.value.details["current_version"] == 1

    @pytest.mark.asyncio
    async def test_missing_actor(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        with pytest.raises(ValidationFailedError):
            await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, "")

    @pytest.mark.asyncio
    async def test_missing_invoice(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.request_transition("invoice", "missing", "needs_approval", {}, ACTOR)


class TestInvoiceMaintenance:
    """Receive, edit, code, close-out, unarchive, deny, delete"""

    @pytest.mark.asyncio
    async def test_receive_validation(self, ledger):
        with pytest.raises(ValidationFailedError) as exc_info:
            await ledger.receive(0, invoice_date="2026-03-01", due_date="2026-02-01")
        errors = exc_info.value.details["errors"]
        assert "amount cannot be zero" in errors
        assert "due_date cannot be before invoice_date" in errors

    @pytest.mark.asyncio
    async def test_duplicate_invoice_number_per_vendor(self, ledger):
        first = await ledger.receive(1000.0, invoice_number="INV-77")
        with pytest.raises(ValidationFailedError) as exc_info:
            await ledger.receive(1000.0, invoice_number="INV-77")
        assert exc_info.value.details["duplicate_id"] == first["_id"]

    @pytest.mark.asyncio
    async def test_edit_ignores_non_editable_fields(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        result = await orchestrator.update_invoice(
            invoice["_id"], {"notes": "Net 30", "status": "paid"}, ACTOR, expected_version=1
        )
        assert result.entity["notes"] == "Net 30"
        assert result.entity["status"] == "received"
        assert result.entity["version"] == 2

    @pytest.mark.asyncio
    async def test_amount_locked_after_approval(self, ledger, orchestrator):
        invoice = await ledger.approved(1000.0, [{"cost_code_id": "03-300", "amount": 1000.0}])
        with pytest.raises(ValidationFailedError):
            await orchestrator.update_invoice(invoice["_id"], {"amount": 1200.0}, ACTOR)

    @pytest.mark.asyncio
    async def test_set_allocations_warns_when_unbalanced(self, ledger, orchestrator, store):
        invoice = await ledger.receive(1000.0)
        result = await orchestrator.set_allocations(
            invoice["_id"], [{"cost_code_id": "03-300", "amount": 400.0}], ACTOR
        )
        assert result.warnings == ["Allocations are 600.00 away from the invoice amount"]
        assert len(await store.list_allocations(invoice["_id"])) == 1

    @pytest.mark.asyncio
    async def test_set_allocations_rejected_after_approval(self, ledger, orchestrator):
        invoice = await ledger.approved(1000.0, [{"cost_code_id": "03-300", "amount": 1000.0}])
        with pytest.raises(ValidationFailedError):
            await orchestrator.set_allocations(invoice["_id"], [{"cost_code_id": "03-300", "amount": 1000.0}], ACTOR)

    @pytest.mark.asyncio
    async def test_close_out_then_unarchive_and_reopen(self, ledger, orchestrator, store):
        invoice = await ledger.approved(2500.0, [{"cost_code_id": "03-300", "amount": 2500.0}])

        closed = await orchestrator.close_out_invoice(invoice["_id"], "Paid by check outside the draw", ACTOR)
        assert closed.entity["status"] == "paid"
        assert closed.entity["archived"] is True
        assert closed.entity["written_off_amount"] == 2500.0
        assert await store.list_allocations(invoice["_id"]) == []
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 0.0

        with pytest.raises(ValidationFailedError):
            await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)

        unarchived = await orchestrator.unarchive_invoice(invoice["_id"], ACTOR)
        assert unarchived.entity["archived"] is False

        reopened = await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)
        assert reopened.entity["status"] == "needs_approval"
        assert reopened.entity["closeout_reason"] is None

    @pytest.mark.asyncio
    async def test_close_out_requires_reason(self, ledger, orchestrator):
        invoice = await ledger.approved(2500.0, [{"cost_code_id": "03-300", "amount": 2500.0}])
        with pytest.raises(ValidationFailedError):
            await orchestrator.close_out_invoice(invoice["_id"], "   ", ACTOR)

    @pytest.mark.asyncio
    async def test_unarchive_requires_closed_out_invoice(self, ledger, orchestrator):
        invoice = await ledger.receive(1000.0)
        with pytest.raises(ValidationFailedError):
            await orchestrator.unarchive_invoice(invoice["_id"], ACTOR)

    @pytest.mark.asyncio
    async def test_deny_and_resubmit(self, ledger, orchestrator, store):
        invoice = await ledger.coded(800.0, [{"cost_code_id": "03-300", "amount": 800.0}])

        with pytest.raises(ValidationFailedError):
            await orchestrator.request_transition("invoice", invoice["_id"], "denied", {}, ACTOR)

        denied = await orchestrator.request_transition(
            "invoice", invoice["_id"], "denied", {"reason": "Work not performed"}, ACTOR
        )
        assert denied.entity["denial_reason"] == "Work not performed"
        assert await store.list_allocations(invoice["_id"]) == []

        resubmitted = await orchestrator.request_transition("invoice", invoice["_id"], "received", {}, ACTOR)
        assert resubmitted.entity["status"] == "received"
        assert resubmitted.entity["denial_reason"] is None

    @pytest.mark.asyncio
    async def test_soft_delete_reverses_billing(self, ledger, orchestrator, store):
        invoice = await ledger.approved(3000.0, [{"cost_code_id": "03-300", "amount": 3000.0}])
        result = await orchestrator.delete_invoice(invoice["_id"], ACTOR)

        assert result.entity["deleted_by"] == ACTOR
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 0.0
        with pytest.raises(NotFoundError):
            await store.get_invoice(invoice["_id"])

        again = await ledger.receive(3000.0, invoice_number=invoice["invoice_number"])
        assert again["status"] == "received"

    @pytest.mark.asyncio
    async def test_paid_invoice_cannot_be_deleted(self, ledger, orchestrator):
        invoice = await ledger.approved(2500.0, [{"cost_code_id": "03-300", "amount": 2500.0}])
        await orchestrator.close_out_invoice(invoice["_id"], "Settled", ACTOR)
        with pytest.raises(ValidationFailedError):
            await orchestrator.delete_invoice(invoice["_id"], ACTOR)


class FailingStamper(DocumentStamper):
    async def stamp(self, entity_type, entity, label):
        raise StampingError("renderer offline")


class SilentActivity:
    """Activity sink whose writes always fail"""

    async def log(self, entity_type, entity_id, action, performed_by, details=None):
        return False


class TestSideEffects:
    """Stamping, activity and broadcast never fail a committed transition"""

    @pytest.mark.asyncio
    async def test_activity_rows_written(self, ledger, activity):
        invoice = await ledger.approved(10000.0, SPLIT)
        rows = await activity.get_activity("invoice", invoice["_id"])
        actions = {row["action"] for row in rows}
        assert {"received", "submit_for_approval", "approve"} <= actions
        approve_row = next(row for row in rows if row["action"] == "approve")
        assert approve_row["details"] == {"from_status": "needs_approval", "to_status": "approved"}

    @pytest.mark.asyncio
    async def test_broadcast_after_commit(self, ledger, broadcaster):
        events = []
        broadcaster.register_handler("*", events.append)

        invoice = await ledger.approved(10000.0, SPLIT)
        await broadcaster.drain()

        approve_events = [e for e in events if e["event_type"] == "invoice.approve"]
        assert len(approve_events) == 1
        assert approve_events[0]["payload"]["entity_id"] == invoice["_id"]
        assert approve_events[0]["payload"]["status"] == "approved"

    @pytest.mark.asyncio
    async def test_stamping_and_activity_failures_become_warnings(self, db, settings, clock):
        orchestrator = build_orchestrator(
            db, settings=settings, clock=clock, stamper=FailingStamper(), activity=SilentActivity()
        )
        ledger = LedgerFactory(orchestrator, CommitmentService(orchestrator.store))
        invoice = await ledger.coded(1000.0, [{"cost_code_id": "03-300", "amount": 1000.0}])

        result = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert result.success
        assert "PDF stamping failed: renderer offline" in result.warnings
        assert any("Activity log" in w for w in result.warnings)
        assert (await orchestrator.store.get_invoice(invoice["_id"]))["status"] == "approved"


class TestBulkOperations:
    """Each invoice in a batch succeeds or fails on its own"""

    @pytest.mark.asyncio
    async def test_bulk_approve_reports_per_invoice(self, ledger, orchestrator, store):
        good = await ledger.coded(10000.0, SPLIT)
        unbalanced = await ledger.coded(1000.0, [{"cost_code_id": "03-300", "amount": 600.0}])
        received = await ledger.receive(500.0)

        outcome = await orchestrator.bulk_approve([good["_id"], unbalanced["_id"], received["_id"], "missing"], ACTOR)

        assert outcome["succeeded"] == [good["_id"]]
        failed = {row["invoice_id"]: row["code"] for row in outcome["failed"]}
        assert failed == {
            unbalanced["_id"]: "VALIDATION_FAILED",
            received["_id"]: "TRANSITION_NOT_ALLOWED",
            "missing": "NOT_FOUND",
        }
        assert (await store.get_invoice(good["_id"]))["status"] == "approved"
        assert (await store.get_invoice(unbalanced["_id"]))["status"] == "needs_approval"

    @pytest.mark.asyncio
    async def test_bulk_approve_po_overage(self, ledger, orchestrator, store):
        po = await ledger.purchase_order([{"cost_code_id": "03-300", "amount": 1000.0}])
        invoice = await ledger.coded(1200.0, [{"cost_code_id": "03-300", "amount": 1200.0}], po_id=po["_id"])

        outcome = await orchestrator.bulk_approve([invoice["_id"]], ACTOR)
        assert outcome["succeeded"] == []
        assert outcome["failed"][0]["code"] == "PO_OVERAGE"
        assert outcome["failed"][0]["overage_amount"] == 200.0

        outcome = await orchestrator.bulk_approve([invoice["_id"]], ACTOR, override_po_overage=True)
        assert outcome["succeeded"] == [invoice["_id"]]
        assert any("200.00" in w for w in outcome["warnings"])

    @pytest.mark.asyncio
    async def test_bulk_approve_ignores_repeated_ids(self, ledger, orchestrator):
        invoice = await ledger.coded(10000.0, SPLIT)
        outcome = await orchestrator.bulk_approve([invoice["_id"], invoice["_id"]], ACTOR)
        assert outcome["succeeded"] == [invoice["_id"]]
        assert outcome["failed"] == []

    @pytest.mark.asyncio
    async def test_bulk_deny(self, ledger, orchestrator, store):
        first = await ledger.receive(1000.0)
        second = await ledger.coded(2000.0, [{"cost_code_id": "03-300", "amount": 2000.0}])
        approved = await ledger.approved(3000.0, [{"cost_code_id": "03-300", "amount": 3000.0}])

        with pytest.raises(ValidationFailedError):
            await orchestrator.bulk_deny([first["_id"]], " ", ACTOR)

        outcome = await orchestrator.bulk_deny([first["_id"], second["_id"], approved["_id"]], "Duplicate billing", ACTOR)
        assert outcome["succeeded"] == [first["_id"], second["_id"]]
        assert outcome["failed"][0]["invoice_id"] == approved["_id"]

        denied = await store.get_invoice(second["_id"])
        assert denied["status"] == "denied"
        assert denied["denial_reason"] == "Duplicate billing"
        assert await store.list_allocations(second["_id"]) == []

    @pytest.mark.asyncio
    async def test_bulk_add_to_draw(self, ledger, orchestrator, store):
        first = await ledger.approved(10000.0, SPLIT)
        second = await ledger.approved(2500.0, [{"cost_code_id": "03-300", "amount": 2500.0}])
        pending = await ledger.coded(800.0, [{"cost_code_id": "03-300", "amount": 800.0}])
        draw = await orchestrator.create_draw(first["job_id"], ACTOR)

        outcome = await orchestrator.bulk_add_to_draw([first["_id"], second["_id"], pending["_id"]], draw["_id"], ACTOR)
        assert outcome["succeeded"] == [first["_id"], second["_id"]]
        assert [row["invoice_id"] for row in outcome["failed"]] == [pending["_id"]]
        assert outcome["draw"]["total_amount"] == 12500.0

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, orchestrator):
        with pytest.raises(ValidationFailedError):
            await orchestrator.bulk_approve([], ACTOR)
