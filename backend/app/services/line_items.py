"""Invoice line item builders.

Everything here is a pure function of the invoice/task data it is given and
returns plain row dicts ready for ``BillingStore.insert_line_item(s)``.
"""

from decimal import Decimal
from typing import Iterable, List, Sequence

from backend.app.models.task import BillingUnit
from backend.app.schemas.task_billing import TaskBillingRequest
from backend.app.services.billing_state import to_cents, to_decimal

TOTAL_TOLERANCE = Decimal("0.01")
QUANTITY_PLACES = Decimal("0.0001")


def money(value) -> Decimal:
    return to_cents(value)


def totals_match(left, right, tolerance: Decimal = TOTAL_TOLERANCE) -> bool:
    return abs(to_decimal(left) - to_decimal(right)) <= tolerance


def line_items_total(items: Iterable) -> Decimal:
    total = Decimal("0.00")
    for item in items:
        amount = item.get("amount") if isinstance(item, dict) else item.amount
        total += to_decimal(amount)
    return money(total)


def build_task_line_item(invoice_id: int, request: TaskBillingRequest, task=None, sort_order: int = 0) -> dict:
    """Line item for billing ``request.percentage_to_bill`` of a task.

    ``task`` may be None when the catalog lookup failed; the request's own
    budget and amount are used instead.
    """
    quantity = to_decimal(getattr(task, "estimated_hours", None))
    if quantity <= 0:
        quantity = Decimal("1")
    fees = to_decimal(getattr(task, "estimated_fees", None))
    if fees <= 0:
        fees = to_decimal(request.total_budget)

    unit_price = money(fees / quantity)
    billed_quantity = (quantity * to_cents(request.percentage_to_bill) / Decimal("100")).quantize(QUANTITY_PLACES)
    is_unit_priced = task is not None and task.billing_unit == BillingUnit.UNIT.value

    return {
        "invoice_id": invoice_id,
        "task_id": request.task_id,
        "description": (task.name if task is not None and task.name else "Task"),
        "quantity": billed_quantity,
        "unit_price": unit_price,
        # Caller-supplied amount is authoritative; rate x quantity may drift by a cent
        "amount": money(request.amount_to_bill),
        "unit": "unit" if is_unit_priced else "hr",
        "billing_type": request.billing_type.value,
        "billed_percentage": to_cents(request.percentage_to_bill),
        "task_total_budget": money(request.total_budget),
        "sort_order": sort_order,
    }


def fallback_line_item(invoice_id: int, requests: Sequence[TaskBillingRequest], invoice_subtotal=None) -> dict:
    """Single catch-all line so an invoice never ends up without a breakdown."""
    description = "Task billing" if len(requests) == 1 else f"{len(requests)} tasks billed"
    amount = to_decimal(invoice_subtotal)
    if amount == 0:
        amount = sum((to_decimal(r.amount_to_bill) for r in requests), Decimal("0"))
    amount = money(amount)
    return {
        "invoice_id": invoice_id,
        "description": description,
        "quantity": Decimal("1"),
        "unit_price": amount,
        "amount": amount,
        "sort_order": 0,
    }


def source_label(invoice) -> str:
    project = getattr(invoice, "project", None)
    if project is not None and project.name:
        return project.name
    return invoice.invoice_number or "General"


def _catch_all(target_invoice_id: int, label: str, amount, sort_order: int) -> dict:
    amount = money(amount)
    return {
        "invoice_id": target_invoice_id,
        "description": f"[{label}] Project Total",
        "quantity": Decimal("1"),
        "unit_price": amount,
        "amount": amount,
        "unit": None,
        "sort_order": sort_order,
    }


def _task_billed_value(task) -> Decimal:
    for value in (task.billed_amount, task.total_budget, task.estimated_fees):
        if value is not None and to_decimal(value) != 0:
            return to_decimal(value)
    return Decimal("0")


def synthesize_line_items(
    target_invoice_id: int,
    source_total,
    label: str,
    billed_tasks: Sequence = (),
    start_sort_order: int = 0,
) -> List[dict]:
    """Reconstruct line items for a source invoice that has a total but no lines.

    One line per billed task when their amounts add up to the invoice total
    (within a cent); otherwise one catch-all line for the full total.
    """
    if billed_tasks:
        rows = []
        for offset, task in enumerate(billed_tasks):
            amount = money(_task_billed_value(task))
            rows.append(
                {
                    "invoice_id": target_invoice_id,
                    "description": f"[{label}] {task.name}",
                    "quantity": Decimal("1"),
                    "unit_price": amount,
                    "amount": amount,
                    "unit": None,
                    "sort_order": start_sort_order + offset,
                }
            )
        if totals_match(line_items_total(rows), source_total):
            return rows
    return [_catch_all(target_invoice_id, label, source_total, start_sort_order)]


def copy_line_item(item, target_invoice_id: int, label: str, index: int) -> dict:
    """Copy of a source invoice line for the consolidated invoice, with provenance prefix."""
    return {
        "invoice_id": target_invoice_id,
        "description": f"[{label}] {item.description or 'Line item'}",
        "quantity": to_decimal(item.quantity) or Decimal("1"),
        "unit_price": money(item.unit_price),
        "amount": money(item.amount),
        "unit": item.unit,
        "sort_order": item.sort_order or index,
    }
