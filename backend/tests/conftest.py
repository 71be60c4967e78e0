"""
Shared fixtures for the ledger tests.

The engine runs against mongomock-motor with transactions disabled and a
controllable clock, so lock TTLs and undo windows can be stepped through.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import uuid

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from audit_service import ActivityService
from ledger_core.collaborators import Broadcaster
from ledger_core.commitments import CommitmentService
from ledger_core.orchestrator import build_orchestrator
from ledger_core.settings import Settings

JOB_ID = "job-riverside"
VENDOR_ID = "vendor-acme-concrete"
ACTOR = "alice"
OTHER_ACTOR = "bob"


class FakeClock:
    """Callable clock the store reads instead of datetime.utcnow"""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: int):
        self.current = self.current + timedelta(seconds=seconds)


class LedgerFactory:
    """Builds invoices, purchase orders and draws through the public operations"""

    def __init__(self, orchestrator, commitments: CommitmentService):
        self.orchestrator = orchestrator
        self.commitments = commitments
        self.store = orchestrator.store
        self._counter = 0

    async def seed_budget(self, cost_code_id: str, budgeted: float, job_id: str = JOB_ID) -> Dict[str, Any]:
        line = {
            "_id": str(uuid.uuid4()),
            "job_id": job_id,
            "cost_code_id": cost_code_id,
            "budgeted_amount": budgeted,
            "committed_amount": 0.0,
            "billed_amount": 0.0,
            "paid_amount": 0.0,
        }
        await self.store.budget_lines.insert_one(line)
        return line

    async def budget_line(self, cost_code_id: str, job_id: str = JOB_ID) -> Dict[str, Any]:
        return await self.store.budget_lines.find_one({"job_id": job_id, "cost_code_id": cost_code_id})

    async def purchase_order(self, lines: List[Dict[str, Any]], job_id: str = JOB_ID) -> Dict[str, Any]:
        self._counter += 1
        return await self.commitments.issue_purchase_order(
            job_id, VENDOR_ID, f"PO-{self._counter:04d}", lines, ACTOR
        )

    async def receive(self, amount: float, po_id: Optional[str] = None, job_id: str = JOB_ID, **extra) -> Dict[str, Any]:
        self._counter += 1
        data = {
            "vendor_id": VENDOR_ID,
            "job_id": job_id,
            "po_id": po_id,
            "invoice_number": f"INV-{self._counter:04d}",
            "amount": amount,
        }
        data.update(extra)
        return await self.orchestrator.receive_invoice(data, ACTOR)

    async def coded(self, amount: float, allocations: List[Dict[str, Any]], po_id: Optional[str] = None) -> Dict[str, Any]:
        invoice = await self.receive(amount, po_id=po_id)
        result = await self.orchestrator.request_transition(
            "invoice", invoice["_id"], "needs_approval", {"allocations": allocations}, ACTOR
        )
        return result.entity

    async def approved(self, amount: float, allocations: List[Dict[str, Any]], po_id: Optional[str] = None) -> Dict[str, Any]:
        invoice = await self.coded(amount, allocations, po_id=po_id)
        result = await self.orchestrator.request_transition("invoice", invoice["_id"], "approved", {}, ACTOR)
        assert result.success, result.po_overage
        return result.entity

    async def draw_with(self, invoices: List[Dict[str, Any]], job_id: str = JOB_ID) -> Dict[str, Any]:
        draw = await self.orchestrator.create_draw(job_id, ACTOR)
        outcome = await self.orchestrator.add_invoices_to_draw(
            draw["_id"], [{"invoice_id": inv["_id"]} for inv in invoices], ACTOR
        )
        assert not outcome["errors"], outcome["errors"]
        return outcome["draw"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(use_transactions=False, maintenance_interval_seconds=0)


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    yield client[f"draw_ledger_test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def activity(db, clock):
    return ActivityService(db, clock=clock)


@pytest_asyncio.fixture
async def orchestrator(db, settings, clock, broadcaster, activity):
    orchestrator = build_orchestrator(
        db,
        settings=settings,
        clock=clock,
        broadcaster=broadcaster,
        activity=activity,
    )
    await orchestrator.store.ensure_indexes()
    return orchestrator


@pytest.fixture
def store(orchestrator):
    return orchestrator.store


@pytest.fixture
def commitments(store):
    return CommitmentService(store)


@pytest.fixture
def ledger(orchestrator, commitments):
    return LedgerFactory(orchestrator, commitments)
