"""Invoice deletion and task ledger rollback.

Order of operations per delete:

1. validation      - refuse invoices that were merged into a consolidated invoice
2. aggregate       - per-task billed percentage/amount contributed by the invoice(s)
3. revert sources  - a deleted consolidated invoice hands its sources back as drafts
4. time_entries    - detach time entries
5. line_items      - delete the invoice's line items
6. invoice(s)      - delete the header(s)
7. rollback        - retreat each task once by its aggregated delta

Steps 4-6 report the failing step and stop. Step 7 only runs once the header is
gone; a failed retreat is reported but does not undo the deletion.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import structlog

from backend.app.core.errors import StepFailure, ValidationError
from backend.app.services.billing_state import BillingDelta, TaskBillingState, aggregate_line_item_deltas
from backend.app.services.invoice_creation import TaskBillingError
from backend.app.services.store import BillingStore

LOGGER = structlog.get_logger(__name__)

CONSOLIDATED_SOURCE_MESSAGE = (
    "Cannot delete this invoice because it has been consolidated into another invoice. "
    "Delete the consolidated invoice first."
)


@dataclass
class DeletionResult:
    success: bool
    error: str | None = None
    step: str | None = None
    rollback_errors: List[TaskBillingError] = field(default_factory=list)

    @classmethod
    def failed(cls, exc: BaseException) -> "DeletionResult":
        step = exc.step if isinstance(exc, StepFailure) else "validation"
        error = exc.error if isinstance(exc, StepFailure) else exc
        return cls(success=False, error=str(error), step=step)

    def raise_for_failure(self) -> None:
        if not self.success:
            raise StepFailure(self.step or "unknown", self.error or "")


def _run_step(step: str, fn, *args):
    try:
        return fn(*args)
    except Exception as exc:
        LOGGER.error("invoice_delete_step_failed", step=step, error=str(exc))
        raise StepFailure(step, exc) from exc


def _revert_sources(store: BillingStore, source_ids: Sequence[int]) -> None:
    if not source_ids:
        return
    try:
        store.update_invoices(list(source_ids), consolidated_into=None, status="draft")
        LOGGER.info("consolidation_sources_reverted", source_ids=list(source_ids))
    except Exception as exc:
        # Deletion proceeds; the sources keep a dangling consolidated_into
        LOGGER.error("consolidation_revert_failed", source_ids=list(source_ids), error=str(exc))


def _roll_back_tasks(ledger: TaskBillingState, deltas: Dict[int, BillingDelta]) -> List[TaskBillingError]:
    errors = []
    for task_id, delta in deltas.items():
        try:
            ledger.retreat(task_id, delta.percentage, delta.amount)
        except Exception as exc:
            LOGGER.error("task_billing_rollback_failed", task_id=task_id, error=str(exc))
            errors.append(TaskBillingError(task_id=task_id, step="rollback", message=str(exc)))
    return errors


def _delete(
    store: BillingStore,
    invoice_ids: List[int],
    source_ids: List[int],
    header_step: str,
    ledger: TaskBillingState | None,
) -> DeletionResult:
    ledger = ledger or TaskBillingState(store)
    try:
        line_items = _run_step("validation", store.list_line_items, invoice_ids, True)
        deltas = aggregate_line_item_deltas(line_items)
        _revert_sources(store, source_ids)
        _run_step("time_entries", store.detach_time_entries, invoice_ids)
        _run_step("line_items", store.delete_line_items, invoice_ids)
        _run_step(header_step, store.delete_invoices, invoice_ids)
    except StepFailure as exc:
        return DeletionResult.failed(exc)

    LOGGER.info("invoices_deleted", invoice_ids=invoice_ids, tasks_to_roll_back=len(deltas))
    rollback_errors = _roll_back_tasks(ledger, deltas)
    return DeletionResult(success=True, rollback_errors=rollback_errors)


def delete_invoice(
    store: BillingStore,
    invoice_id: int,
    owner_id: int | None = None,
    ledger: TaskBillingState | None = None,
) -> DeletionResult:
    """Delete one invoice and roll its task billing back out of the ledger."""
    try:
        invoice = _run_step("validation", store.get_invoice, invoice_id, owner_id)
    except StepFailure as exc:
        return DeletionResult.failed(exc)
    if invoice is None:
        return DeletionResult.failed(ValidationError("Invoice not found"))
    if invoice.consolidated_into is not None:
        return DeletionResult.failed(ValidationError(CONSOLIDATED_SOURCE_MESSAGE))

    source_ids = list(invoice.consolidated_from) if invoice.is_consolidated_invoice else []
    return _delete(store, [invoice_id], source_ids, "invoice", ledger)


def delete_invoices(
    store: BillingStore,
    invoice_ids: Sequence[int],
    owner_id: int | None = None,
    ledger: TaskBillingState | None = None,
) -> DeletionResult:
    """Bulk delete; deltas are aggregated across all invoices so each task is rolled back once."""
    ids = list(dict.fromkeys(invoice_ids))
    if not ids:
        return DeletionResult(success=True)

    try:
        invoices = _run_step("validation", store.get_invoices, ids, owner_id)
    except StepFailure as exc:
        return DeletionResult.failed(exc)
    if len(invoices) != len(ids):
        return DeletionResult.failed(ValidationError("Some invoices could not be found"))
    merged = [inv for inv in invoices if inv.consolidated_into is not None]
    if merged:
        numbers = ", ".join(inv.invoice_number or str(inv.id) for inv in merged)
        return DeletionResult.failed(
            ValidationError(
                f"Cannot delete invoices that have been consolidated: {numbers}. Delete the consolidated invoice first."
            )
        )

    source_ids = []
    for invoice in invoices:
        if invoice.is_consolidated_invoice:
            source_ids.extend(invoice.consolidated_from)
    return _delete(store, ids, source_ids, "invoices", ledger)
