"""Per-task cumulative billing ledger.

A task's ``billing_mode`` starts ``unset`` and is locked by the first billing
that touches it: ``time`` by the first time entry, ``percentage`` or
``milestone`` by the first task-based invoice line. Ledger writes are
compare-and-swap on ``billing_version`` so two billers racing on the same
task cannot silently overwrite each other.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List

import structlog

from backend.app.core.errors import ConcurrentBillingUpdate, ModeConflict, OverBilling, TaskNotFound
from backend.app.core.settings import get_settings
from backend.app.models.task import BillingMode, Task
from backend.app.services.store import BillingStore

LOGGER = structlog.get_logger(__name__)

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
TASK_BASED_MODES = (BillingMode.PERCENTAGE.value, BillingMode.MILESTONE.value)


@dataclass(frozen=True)
class BilledState:
    percentage: Decimal
    amount: Decimal


@dataclass
class BillingDelta:
    percentage: Decimal = ZERO
    amount: Decimal = ZERO


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cents(value) -> Decimal:
    """Ledger values are kept in whole cents and percentage hundredths."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_mode(mode) -> str:
    if isinstance(mode, BillingMode):
        return mode.value
    return mode or BillingMode.UNSET.value


def check_mode(current_mode, requested_mode) -> bool:
    """Return True when a task in ``current_mode`` may receive ``requested_mode`` billing."""
    current = normalize_mode(current_mode)
    requested = normalize_mode(requested_mode)
    if requested == BillingMode.UNSET.value:
        return False
    return current == BillingMode.UNSET.value or current == requested


def ensure_mode(task: Task, requested_mode) -> None:
    if not check_mode(task.billing_mode, requested_mode):
        raise ModeConflict(task.id, normalize_mode(task.billing_mode), normalize_mode(requested_mode))


def ensure_headroom(task: Task, delta_percentage) -> None:
    current = to_cents(task.billed_percentage)
    delta = to_cents(delta_percentage)
    if current + delta > HUNDRED:
        raise OverBilling(task.id, current, delta)


def aggregate_line_item_deltas(line_items: Iterable) -> Dict[int, BillingDelta]:
    """Sum billed percentage and amount per task over task-based line items."""
    by_task: Dict[int, BillingDelta] = defaultdict(BillingDelta)
    for item in line_items:
        if item.task_id is None:
            continue
        delta = by_task[item.task_id]
        delta.percentage += to_decimal(item.billed_percentage)
        delta.amount += to_decimal(item.amount)
    return dict(by_task)


class TaskBillingState:
    def __init__(self, store: BillingStore, cas_attempts: int | None = None):
        self.store = store
        self.cas_attempts = cas_attempts or get_settings().billing_cas_attempts

    def _load(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def current_billed(self, task_id: int) -> BilledState:
        task = self._load(task_id)
        return BilledState(percentage=to_decimal(task.billed_percentage), amount=to_decimal(task.billed_amount))

    def advance(
        self,
        task_id: int,
        delta_percentage,
        delta_amount,
        mode,
        total_budget=None,
    ) -> BilledState:
        """Add one invoice line's contribution to the task ledger and lock its mode."""
        requested_mode = normalize_mode(mode)
        if requested_mode not in TASK_BASED_MODES:
            raise ValueError(f"Invoice lines bill tasks by percentage or milestone, not {requested_mode!r}")
        delta_percentage = to_cents(delta_percentage)
        delta_amount = to_cents(delta_amount)

        for _ in range(self.cas_attempts):
            task = self._load(task_id)
            ensure_mode(task, requested_mode)
            ensure_headroom(task, delta_percentage)
            version = task.billing_version or 0
            new_state = BilledState(
                percentage=to_decimal(task.billed_percentage) + delta_percentage,
                amount=to_decimal(task.billed_amount) + delta_amount,
            )
            values = {
                "billed_percentage": new_state.percentage,
                "billed_amount": new_state.amount,
                "billing_mode": requested_mode,
            }
            if total_budget is not None:
                values["total_budget"] = to_decimal(total_budget)
            if self.store.compare_and_set_task(task_id, version, values):
                LOGGER.info(
                    "task_billing_advanced",
                    task_id=task_id,
                    mode=requested_mode,
                    billed_percentage=str(new_state.percentage),
                    billed_amount=str(new_state.amount),
                )
                return new_state
            LOGGER.info("task_billing_version_conflict", task_id=task_id, version=version)
        raise ConcurrentBillingUpdate(task_id, self.cas_attempts)

    def retreat(self, task_id: int, delta_percentage, delta_amount) -> BilledState | None:
        """Remove a deleted invoice's contribution; results are clamped at zero."""
        delta_percentage = to_cents(delta_percentage)
        delta_amount = to_cents(delta_amount)

        for _ in range(self.cas_attempts):
            task = self.store.get_task(task_id)
            if task is None:
                LOGGER.warning("task_billing_retreat_missing_task", task_id=task_id)
                return None
            version = task.billing_version or 0
            new_state = BilledState(
                percentage=max(ZERO, to_decimal(task.billed_percentage) - delta_percentage),
                amount=max(ZERO, to_decimal(task.billed_amount) - delta_amount),
            )
            values = {"billed_percentage": new_state.percentage, "billed_amount": new_state.amount}
            if self.store.compare_and_set_task(task_id, version, values):
                LOGGER.info(
                    "task_billing_retreated",
                    task_id=task_id,
                    billed_percentage=str(new_state.percentage),
                    billed_amount=str(new_state.amount),
                )
                return new_state
        raise ConcurrentBillingUpdate(task_id, self.cas_attempts)

    def lock_time_mode(self, task_id: int) -> Task:
        """Transition ``unset -> time`` on a task's first time entry."""
        for _ in range(self.cas_attempts):
            task = self._load(task_id)
            ensure_mode(task, BillingMode.TIME)
            if task.billing_mode == BillingMode.TIME.value:
                return task
            if self.store.compare_and_set_task(task_id, task.billing_version or 0, {"billing_mode": BillingMode.TIME.value}):
                LOGGER.info("task_billing_mode_locked", task_id=task_id, mode=BillingMode.TIME.value)
                return self._load(task_id)
        raise ConcurrentBillingUpdate(task_id, self.cas_attempts)

    def tasks_with_billing(self, project_id: int) -> List[dict]:
        """Project tasks with billed totals recomputed from existing invoices' line items.

        Line items of deleted invoices are gone, so a task whose only invoice was
        deleted reads as unbilled here even if its stored ledger lagged behind.
        """
        tasks = self.store.list_project_tasks(project_id)
        invoice_ids = self.store.list_project_invoice_ids(project_id)
        deltas = aggregate_line_item_deltas(self.store.list_line_items(invoice_ids, task_only=True))

        rows = []
        for task in tasks:
            delta = deltas.get(task.id, BillingDelta())
            budget = task.effective_budget
            rows.append(
                {
                    "id": task.id,
                    "project_id": task.project_id,
                    "name": task.name,
                    "estimated_hours": task.estimated_hours,
                    "estimated_fees": task.estimated_fees,
                    "billing_unit": task.billing_unit,
                    "billing_mode": task.billing_mode,
                    "billed_percentage": delta.percentage,
                    "billed_amount": delta.amount,
                    "total_budget": to_decimal(budget),
                }
            )
        return rows
