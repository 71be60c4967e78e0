"""
G702 / G703 summary tests
"""
import pytest

from ledger_core.g702 import build_g702

from conftest import ACTOR, JOB_ID


@pytest.fixture
def split():
    return [
        {"cost_code_id": "03-300", "amount": 6000.0},
        {"cost_code_id": "09-900", "amount": 4000.0},
    ]


async def second_application(ledger, orchestrator, commitments, split):
    """Draw 1 funded for 10,000; draw 2 draft with 5,000 of work and 2,000 of change order"""
    await ledger.seed_budget("03-300", 50000.0)
    await ledger.seed_budget("09-900", 30000.0)
    change_order = await commitments.record_change_order(JOB_ID, "CO-001", 20000.0, ACTOR, title="Added footings")

    first_invoice = await ledger.approved(10000.0, split)
    first = await ledger.draw_with([first_invoice])
    await orchestrator.submit_draw(first["_id"], ACTOR)
    await orchestrator.fund_draw(first["_id"], ACTOR)

    second_invoice = await ledger.approved(5000.0, [{"cost_code_id": "03-300", "amount": 5000.0}])
    second = await ledger.draw_with([second_invoice])
    await orchestrator.bill_change_order(second["_id"], change_order["_id"], 2000.0, ACTOR)
    return second


class TestG702:

    @pytest.mark.asyncio
    async def test_continuation_sheet(self, ledger, orchestrator, commitments, store, split):
        draw = await second_application(ledger, orchestrator, commitments, split)
        summary = await build_g702(store, draw["_id"])

        assert summary["draw_number"] == 2
        assert summary["total_amount"] == 7000.0

        concrete, finishes = summary["g703"]
        assert concrete == {
            "cost_code_id": "03-300",
            "scheduled_value": 50000.0,
            "previous_applications": 6000.0,
            "this_period": 5000.0,
            "total_completed": 11000.0,
            "percent_complete": 22.0,
            "balance_to_finish": 39000.0,
        }
        assert finishes["previous_applications"] == 4000.0
        assert finishes["this_period"] == 0.0
        assert finishes["percent_complete"] == 13.33

        change_order = summary["change_orders"][0]
        assert change_order["change_order_number"] == "CO-001"
        assert change_order["this_period"] == 2000.0
        assert change_order["previous_applications"] == 0.0

    @pytest.mark.asyncio
    async def test_header(self, ledger, orchestrator, commitments, store, split):
        draw = await second_application(ledger, orchestrator, commitments, split)
        header = (await build_g702(store, draw["_id"]))["g702"]

        assert header["original_contract_sum"] == 80000.0
        assert header["net_change_orders"] == 20000.0
        assert header["contract_sum_to_date"] == 100000.0
        assert header["total_completed_to_date"] == 17000.0
        assert header["previous_certificates"] == 10000.0
        assert header["current_payment_due"] == 7000.0

    @pytest.mark.asyncio
    async def test_job_contract_amount_wins_over_budget(self, ledger, orchestrator, commitments, store, split):
        await store.jobs.insert_one({"_id": JOB_ID, "name": "Riverside Clinic", "contract_amount": 90000.0})
        draw = await second_application(ledger, orchestrator, commitments, split)
        header = (await build_g702(store, draw["_id"]))["g702"]
        assert header["original_contract_sum"] == 90000.0
        assert header["contract_sum_to_date"] == 110000.0

    @pytest.mark.asyncio
    async def test_overrides_replace_computed_values(self, ledger, orchestrator, commitments, store, split):
        draw = await second_application(ledger, orchestrator, commitments, split)
        await orchestrator.update_g702(
            draw["_id"], {"original_contract_sum": "85000", "application_date": "2026-03-31"}, ACTOR
        )

        summary = await build_g702(store, draw["_id"])
        assert summary["overridden_fields"] == ["application_date", "original_contract_sum"]
        assert summary["g702"]["original_contract_sum"] == 85000.0
        assert summary["g702"]["contract_sum_to_date"] == 105000.0
        assert summary["g702"]["application_date"] == "2026-03-31"
        assert summary["g702"]["current_payment_due"] == 7000.0

    @pytest.mark.asyncio
    async def test_first_draw_has_no_previous(self, ledger, orchestrator, store, split):
        invoice = await ledger.approved(10000.0, split)
        draw = await ledger.draw_with([invoice])
        summary = await build_g702(store, draw["_id"])

        assert summary["g702"]["previous_certificates"] == 0.0
        assert summary["g702"]["current_payment_due"] == 10000.0
        assert all(row["previous_applications"] == 0.0 for row in summary["g703"])
        assert summary["g703"][0]["percent_complete"] == 0.0
