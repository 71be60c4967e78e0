"""
G702 / G703 PAYMENT APPLICATION SUMMARY

Builds the application-for-payment figures for one draw:

G703 (continuation sheet), per cost code:
    scheduled value      = budget line budgeted_amount
    previous             = draw allocations on earlier non-draft draws
    this period          = draw allocations on this draw
    completed to date    = previous + this period
    percent complete     = completed / scheduled * 100
    balance to finish    = scheduled - completed

Change-order schedule: approved change orders with previous / this period billings.

G702 header:
    contract sum to date = original contract sum + net change orders
    current payment due  = total completed to date - previous certificates

Values stored in draw.g702_overrides replace the computed header values.
Output is a plain dict; rendering is not done here.
"""

from decimal import Decimal
from typing import Dict, Any, List
import logging

from .financial_precision import to_decimal, to_float, safe_add, safe_subtract, safe_divide, ZERO
from .ledger_store import LedgerStore
from .state_machine import DrawStatus

logger = logging.getLogger(__name__)

NUMERIC_OVERRIDES = (
    "original_contract_sum",
    "net_change_orders",
    "total_completed_to_date",
    "previous_certificates",
    "current_payment_due",
)


def _by_key(rows: List[Dict[str, Any]], key: str) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for row in rows:
        totals[row[key]] = totals.get(row[key], ZERO) + to_decimal(row.get("amount"))
    return totals


async def build_g702(store: LedgerStore, draw_id: str) -> Dict[str, Any]:
    draw = await store.get_draw(draw_id)
    job_id = draw["job_id"]

    previous_draws = await store.draws.find({
        "job_id": job_id,
        "draw_number": {"$lt": draw["draw_number"]},
        "status": {"$ne": DrawStatus.DRAFT.value},
    }).to_list(length=None)
    previous_ids = [d["_id"] for d in previous_draws]

    current_rows = await store.list_draw_allocations(draw_id=draw_id)
    previous_rows = await store.draw_allocations.find({"draw_id": {"$in": previous_ids}}).to_list(length=None)
    budget_lines = await store.budget_lines.find({"job_id": job_id}).to_list(length=None)

    this_period = _by_key(current_rows, "cost_code_id")
    previous = _by_key(previous_rows, "cost_code_id")
    scheduled = {line["cost_code_id"]: to_decimal(line.get("budgeted_amount")) for line in budget_lines}

    schedule_of_values = []
    for cost_code_id in sorted(set(scheduled) | set(this_period) | set(previous)):
        value = scheduled.get(cost_code_id, ZERO)
        prior = previous.get(cost_code_id, ZERO)
        current = this_period.get(cost_code_id, ZERO)
        completed = prior + current
        percent = safe_divide(completed * 100, value)
        schedule_of_values.append({
            "cost_code_id": cost_code_id,
            "scheduled_value": to_float(value),
            "previous_applications": to_float(prior),
            "this_period": to_float(current),
            "total_completed": to_float(completed),
            "percent_complete": to_float(percent),
            "balance_to_finish": to_float(value - completed),
        })

    change_orders = await store.change_orders.find({"job_id": job_id, "status": "approved"}).to_list(length=None)
    current_billings = _by_key(await store.list_co_billings(draw_id), "change_order_id")
    previous_billings = _by_key(
        await store.co_draw_billings.find({"draw_id": {"$in": previous_ids}}).to_list(length=None),
        "change_order_id"
    )

    change_order_schedule = []
    for co in sorted(change_orders, key=lambda c: c.get("change_order_number") or ""):
        prior = previous_billings.get(co["_id"], ZERO)
        current = current_billings.get(co["_id"], ZERO)
        change_order_schedule.append({
            "change_order_id": co["_id"],
            "change_order_number": co.get("change_order_number"),
            "title": co.get("title"),
            "amount": to_float(co.get("amount")),
            "previous_applications": to_float(prior),
            "this_period": to_float(current),
            "total_completed": to_float(prior + current),
        })

    job = await store.jobs.find_one({"_id": job_id}) or {}
    if job.get("contract_amount") is not None:
        original_contract_sum = to_decimal(job["contract_amount"])
    else:
        original_contract_sum = safe_add(*scheduled.values())

    net_change_orders = safe_add(*(co.get("amount") for co in change_orders))
    total_completed = safe_add(
        *(row["total_completed"] for row in schedule_of_values),
        *(row["total_completed"] for row in change_order_schedule)
    )
    previous_certificates = safe_add(*(d.get("total_amount") for d in previous_draws))

    header = {
        "original_contract_sum": to_float(original_contract_sum),
        "net_change_orders": to_float(net_change_orders),
        "contract_sum_to_date": to_float(original_contract_sum + net_change_orders),
        "total_completed_to_date": to_float(total_completed),
        "previous_certificates": to_float(previous_certificates),
        "current_payment_due": to_float(safe_subtract(total_completed, previous_certificates)),
        "application_date": None,
        "period_to": draw.get("period_end"),
        "architect_project_number": None,
    }

    overrides = draw.get("g702_overrides") or {}
    for key, value in overrides.items():
        header[key] = to_float(value) if key in NUMERIC_OVERRIDES else value
    if "original_contract_sum" in overrides or "net_change_orders" in overrides:
        header["contract_sum_to_date"] = to_float(
            safe_add(header["original_contract_sum"], header["net_change_orders"])
        )

    return {
        "draw_id": draw_id,
        "draw_number": draw["draw_number"],
        "status": draw["status"],
        "total_amount": draw.get("total_amount"),
        "g702": header,
        "overridden_fields": sorted(overrides),
        "g703": schedule_of_values,
        "change_orders": change_order_schedule,
    }
