"""
Transition validator tests: legal edges, terminal states and preconditions.
"""
import pytest

from ledger_core.errors import TransitionNotAllowedError, ValidationFailedError, ErrorCode
from ledger_core.state_machine import (
    EntityType,
    InvoiceStatus,
    DrawStatus,
    INVOICE_TRANSITIONS,
    DRAW_TRANSITIONS,
    can_transition,
    validate_transition,
    parse_status,
    invoice_preconditions,
    draw_preconditions,
)


class TestInvoiceGraph:
    """Invoice status edges"""

    @pytest.mark.parametrize("current,requested", [
        (InvoiceStatus.RECEIVED, InvoiceStatus.NEEDS_APPROVAL),
        (InvoiceStatus.NEEDS_APPROVAL, InvoiceStatus.APPROVED),
        (InvoiceStatus.APPROVED, InvoiceStatus.IN_DRAW),
        (InvoiceStatus.IN_DRAW, InvoiceStatus.PAID),
        (InvoiceStatus.APPROVED, InvoiceStatus.NEEDS_APPROVAL),
        (InvoiceStatus.IN_DRAW, InvoiceStatus.APPROVED),
        (InvoiceStatus.DENIED, InvoiceStatus.RECEIVED),
        (InvoiceStatus.PAID, InvoiceStatus.NEEDS_APPROVAL),
    ])
    def test_legal_edges(self, current, requested):
        assert can_transition(current, requested).valid

    @pytest.mark.parametrize("current,requested", [
        (InvoiceStatus.RECEIVED, InvoiceStatus.APPROVED),
        (InvoiceStatus.RECEIVED, InvoiceStatus.PAID),
        (InvoiceStatus.NEEDS_APPROVAL, InvoiceStatus.IN_DRAW),
        (InvoiceStatus.DENIED, InvoiceStatus.APPROVED),
        (InvoiceStatus.PAID, InvoiceStatus.APPROVED),
    ])
    def test_illegal_edges(self, current, requested):
        check = can_transition(current, requested)
        assert not check.valid
        assert "Allowed" in check.reason

    def test_same_status_rejected(self):
        assert not can_transition(InvoiceStatus.APPROVED, InvoiceStatus.APPROVED).valid

    def test_every_status_has_a_row(self):
        assert set(INVOICE_TRANSITIONS) == set(InvoiceStatus)

    def test_validate_raises_with_details(self):
        with pytest.raises(TransitionNotAllowedError) as exc_info:
            validate_transition(EntityType.INVOICE, InvoiceStatus.RECEIVED, InvoiceStatus.APPROVED)
        error = exc_info.value
        assert error.code == ErrorCode.TRANSITION_NOT_ALLOWED
        assert error.http_status == 409
        assert error.details["from_status"] == "received"
        assert error.details["to_status"] == "approved"


class TestDrawGraph:

    def test_funded_is_terminal(self):
        check = can_transition(DrawStatus.FUNDED, DrawStatus.DRAFT)
        assert not check.valid
        assert "terminal" in check.reason

    def test_unsubmit_edge(self):
        assert can_transition(DrawStatus.SUBMITTED, DrawStatus.DRAFT).valid

    def test_draft_cannot_skip_to_funded(self):
        assert not can_transition(DrawStatus.DRAFT, DrawStatus.FUNDED).valid

    def test_mixed_enums(self):
        assert not can_transition(DrawStatus.DRAFT, InvoiceStatus.APPROVED).valid

    def test_every_status_has_a_row(self):
        assert set(DRAW_TRANSITIONS) == set(DrawStatus)


class TestParseStatus:

    def test_known_status(self):
        assert parse_status(EntityType.DRAW, "submitted") is DrawStatus.SUBMITTED

    def test_unknown_status(self):
        with pytest.raises(ValidationFailedError) as exc_info:
            parse_status(EntityType.INVOICE, "archived")
        assert "needs_approval" in exc_info.value.details["allowed"]


class TestPreconditions:
    """Field-level requirements checked before any write"""

    def test_coding_requires_job(self):
        invoice = {"status": "received", "vendor_id": "v1", "job_id": None}
        problems = invoice_preconditions(invoice, InvoiceStatus.NEEDS_APPROVAL, {})
        assert problems == ["job_id is required before coding"]

    def test_denial_requires_reason(self):
        invoice = {"status": "needs_approval", "vendor_id": "v1", "job_id": "j1"}
        assert invoice_preconditions(invoice, InvoiceStatus.DENIED, {"reason": "  "})
        assert not invoice_preconditions(invoice, InvoiceStatus.DENIED, {"reason": "Duplicate bill"})

    def test_add_to_draw_requires_draw(self):
        invoice = {"status": "approved", "vendor_id": "v1", "job_id": "j1"}
        assert invoice_preconditions(invoice, InvoiceStatus.IN_DRAW, {})

    def test_archived_paid_invoice_cannot_reopen(self):
        invoice = {"status": "paid", "vendor_id": "v1", "job_id": "j1", "archived": True}
        problems = invoice_preconditions(invoice, InvoiceStatus.NEEDS_APPROVAL, {})
        assert "unarchived" in problems[0]

        invoice["archived"] = False
        assert invoice_preconditions(invoice, InvoiceStatus.NEEDS_APPROVAL, {}) == []

    def test_in_draw_invoice_paid_only_by_funding(self):
        invoice = {"status": "in_draw", "vendor_id": "v1", "job_id": "j1"}
        problems = invoice_preconditions(invoice, InvoiceStatus.PAID, {})
        assert "funding" in problems[0]

    def test_funding_requires_submitted_draw(self):
        assert draw_preconditions({"status": "draft"}, DrawStatus.FUNDED, {}) == ["Cannot fund a draft draw. Submit first."]
        assert draw_preconditions({"status": "funded"}, DrawStatus.FUNDED, {}) == ["Draw has already been funded"]
        assert draw_preconditions({"status": "submitted"}, DrawStatus.FUNDED, {}) == []

    def test_unsubmit_requires_reason(self):
        assert draw_preconditions({}, DrawStatus.DRAFT, {})
        assert not draw_preconditions({}, DrawStatus.DRAFT, {"reason": "Lender asked for backup"})
