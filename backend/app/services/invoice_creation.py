"""Invoice creation with per-task billing.

Creation is best effort past the header: once the invoice row exists, a
failing task is recorded and the remaining tasks are still processed, and an
invoice that ends up with no line items gets a single fallback line.
"""

from dataclasses import dataclass, field
from typing import List, Sequence

import structlog

from backend.app.core.errors import PartialFailure
from backend.app.models.invoice import Invoice
from backend.app.schemas.task_billing import TaskBillingRequest
from backend.app.services.billing_state import TaskBillingState, ensure_headroom, ensure_mode, to_decimal
from backend.app.services.line_items import build_task_line_item, fallback_line_item
from backend.app.services.store import BillingStore

LOGGER = structlog.get_logger(__name__)


@dataclass
class TaskBillingError:
    task_id: int
    step: str
    message: str


@dataclass
class InvoiceCreationResult:
    invoice: Invoice
    errors: List[TaskBillingError] = field(default_factory=list)
    fallback_used: bool = False

    @property
    def partial_failure(self) -> bool:
        return bool(self.errors)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialFailure(self.invoice.id, self.errors)


def create_invoice(store: BillingStore, header: dict) -> Invoice:
    invoice = store.insert_invoice(**header)
    LOGGER.info("invoice_created", invoice_id=invoice.id, invoice_number=invoice.invoice_number)
    return invoice


class _StepError(Exception):
    def __init__(self, step: str, error: BaseException):
        super().__init__(str(error))
        self.step = step
        self.error = error


def _bill_task(store: BillingStore, ledger: TaskBillingState, invoice_id: int, request: TaskBillingRequest, sort_order: int) -> None:
    try:
        task = store.get_task(request.task_id)
    except Exception as exc:
        LOGGER.warning("task_lookup_failed", task_id=request.task_id, error=str(exc))
        task = None

    if task is not None:
        ensure_mode(task, request.billing_type.value)
        ensure_headroom(task, request.percentage_to_bill)
        if to_decimal(task.billed_percentage) != to_decimal(request.previous_billed_percentage):
            LOGGER.warning(
                "task_billing_stale_view",
                task_id=task.id,
                stored_percentage=str(task.billed_percentage),
                requested_from=str(request.previous_billed_percentage),
            )

    try:
        store.insert_line_item(**build_task_line_item(invoice_id, request, task, sort_order=sort_order))
    except Exception as exc:
        raise _StepError("line_item", exc) from exc

    try:
        ledger.advance(
            request.task_id,
            request.percentage_to_bill,
            request.amount_to_bill,
            request.billing_type.value,
            total_budget=request.total_budget or None,
        )
    except Exception as exc:
        raise _StepError("task_update", exc) from exc


def create_invoice_with_task_billing(
    store: BillingStore,
    header: dict,
    requests: Sequence[TaskBillingRequest],
    ledger: TaskBillingState | None = None,
) -> InvoiceCreationResult:
    """Create an invoice, one line per task billing request, and advance each task's ledger.

    A header insert failure propagates: nothing has been written yet. Per-task
    failures are collected on the result instead of raised.
    """
    ledger = ledger or TaskBillingState(store)
    invoice = create_invoice(store, header)
    invoice_id = invoice.id
    result = InvoiceCreationResult(invoice=invoice)

    for index, request in enumerate(requests):
        try:
            _bill_task(store, ledger, invoice_id, request, sort_order=index)
        except _StepError as exc:
            LOGGER.error("task_billing_failed", invoice_id=invoice_id, task_id=request.task_id, step=exc.step, error=str(exc.error))
            result.errors.append(TaskBillingError(task_id=request.task_id, step=exc.step, message=str(exc.error)))
        except Exception as exc:
            LOGGER.error("task_billing_failed", invoice_id=invoice_id, task_id=request.task_id, step="validation", error=str(exc))
            result.errors.append(TaskBillingError(task_id=request.task_id, step="validation", message=str(exc)))

    if result.errors:
        LOGGER.warning("invoice_created_with_errors", invoice_id=invoice_id, error_count=len(result.errors))

    if store.count_line_items(invoice_id) == 0:
        LOGGER.error("invoice_without_line_items", invoice_id=invoice_id, requests=len(requests))
        store.insert_line_item(**fallback_line_item(invoice_id, requests, invoice.subtotal))
        result.fallback_used = True

    return result
