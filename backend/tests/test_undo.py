"""
Undo journal tests: restore, expiry, supersession and conflict handling.
"""
import pytest

from ledger_core.errors import UndoNotFoundError, VersionConflictError, TransitionNotAllowedError

from conftest import ACTOR

SPLIT = [
    {"cost_code_id": "03-300", "amount": 6000.0},
    {"cost_code_id": "09-900", "amount": 4000.0},
]


class TestInvoiceUndo:
    """Single-level undo of invoice transitions"""

    @pytest.mark.asyncio
    async def test_undo_approval_restores_prior_state(self, ledger, orchestrator, store):
        invoice = await ledger.coded(10000.0, SPLIT)
        before = await store.get_invoice(invoice["_id"])
        before_allocations = await store.list_allocations(invoice["_id"])

        result = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert result.undo["available"] is True
        entry_id = result.undo["entry"]["id"]
        assert result.undo["entry"]["action"] == "approve"

        outcome = await orchestrator.execute_undo(entry_id, ACTOR)
        assert outcome["success"] is True
        assert outcome["action"] == "approve"
        assert outcome["warnings"] == []

        assert await store.get_invoice(invoice["_id"]) == before
        assert await store.list_allocations(invoice["_id"]) == before_allocations
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 0.0
        assert (await ledger.budget_line("09-900"))["billed_amount"] == 0.0

        with pytest.raises(UndoNotFoundError):
            await orchestrator.execute_undo(entry_id, ACTOR)
        assert (await orchestrator.get_available_undo("invoice", invoice["_id"]))["available"] is False

    @pytest.mark.asyncio
    async def test_entry_expires(self, ledger, orchestrator, clock):
        invoice = await ledger.coded(10000.0, SPLIT)
        result = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert result.undo["entry"]["expires_in_ms"] == 30000

        clock.advance(31)
        assert (await orchestrator.get_available_undo("invoice", invoice["_id"]))["available"] is False
        with pytest.raises(UndoNotFoundError):
            await orchestrator.execute_undo(result.undo["entry"]["id"], ACTOR)

    @pytest.mark.asyncio
    async def test_newer_action_supersedes(self, ledger, orchestrator, store):
        invoice = await ledger.coded(10000.0, SPLIT)
        approve = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        unapprove = await orchestrator.request_transition("invoice", invoice["_id"], "needs_approval", {}, ACTOR)

        with pytest.raises(UndoNotFoundError):
            await orchestrator.execute_undo(approve.undo["entry"]["id"], ACTOR)

        await orchestrator.execute_undo(unapprove.undo["entry"]["id"], ACTOR)
        restored = await store.get_invoice(invoice["_id"])
        assert restored["status"] == "approved"
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 6000.0
        assert (await ledger.budget_line("09-900"))["billed_amount"] == 4000.0

    @pytest.mark.asyncio
    async def test_version_conflict_keeps_entry_open(self, ledger, orchestrator, store):
        invoice = await ledger.coded(10000.0, SPLIT)
        result = await orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        await store.invoices.update_one({"_id": invoice["_id"]}, {"$inc": {"version": 1}})

        with pytest.raises(VersionConflictError):
            await orchestrator.execute_undo(result.undo["entry"]["id"], ACTOR)

        assert (await orchestrator.get_available_undo("invoice", invoice["_id"]))["available"] is True
        assert (await ledger.budget_line("03-300"))["billed_amount"] == 6000.0

    @pytest.mark.asyncio
    async def test_undo_add_to_draw(self, ledger, orchestrator, store):
        invoice = await ledger.approved(10000.0, SPLIT)
        draw = await ledger.draw_with([invoice])
        assert draw["total_amount"] == 10000.0

        available = await orchestrator.get_available_undo("invoice", invoice["_id"])
        assert available["entry"]["action"] == "add_to_draw"
        await orchestrator.execute_undo(available["entry"]["id"], ACTOR)

        restored = await store.get_invoice(invoice["_id"])
        assert restored["status"] == "approved"
        assert restored["draw_id"] is None
        assert [a["amount"] for a in await store.list_allocations(invoice["_id"])] == [6000.0, 4000.0]
        assert await store.list_draw_allocations(draw_id=draw["_id"]) == []
        assert (await store.get_draw(draw["_id"]))["total_amount"] == 0.0

    @pytest.mark.asyncio
    async def test_undo_blocked_once_draw_submitted(self, ledger, orchestrator):
        invoice = await ledger.approved(10000.0, SPLIT)
        draw = await ledger.draw_with([invoice])
        entry = (await orchestrator.get_available_undo("invoice", invoice["_id"]))["entry"]

        await orchestrator.submit_draw(draw["_id"], ACTOR)

        with pytest.raises(TransitionNotAllowedError):
            await orchestrator.execute_undo(entry["id"], ACTOR)

    @pytest.mark.asyncio
    async def test_missing_entry(self, orchestrator):
        with pytest.raises(UndoNotFoundError):
            await orchestrator.execute_undo("no-such-entry", ACTOR)


class TestDrawUndo:

    @pytest.mark.asyncio
    async def test_undo_submit(self, ledger, orchestrator, store):
        invoice = await ledger.approved(10000.0, SPLIT)
        draw = await ledger.draw_with([invoice])

        result = await orchestrator.submit_draw(draw["_id"], ACTOR)
        assert result.entity["status"] == "submitted"

        await orchestrator.execute_undo(result.undo["entry"]["id"], ACTOR)
        restored = await store.get_draw(draw["_id"])
        assert restored["status"] == "draft"
        assert restored["version"] == 1
        assert restored["total_amount"] == 10000.0

    @pytest.mark.asyncio
    async def test_funding_is_not_journaled(self, ledger, orchestrator):
        invoice = await ledger.approved(10000.0, SPLIT)
        draw = await ledger.draw_with([invoice])
        await orchestrator.submit_draw(draw["_id"], ACTOR)

        funded = await orchestrator.fund_draw(draw["_id"], ACTOR)
        assert funded.undo is None
        assert (await orchestrator.get_available_undo("draw", draw["_id"]))["available"] is False
        assert (await orchestrator.get_available_undo("invoice", invoice["_id"]))["available"] is False

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, ledger, orchestrator, clock):
        await ledger.approved(10000.0, SPLIT)
        clock.advance(31)
        assert await orchestrator.journal.cleanup_expired() >= 2
