"""Error taxonomy for the task billing ledger and invoice lifecycle."""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing ledger failures."""


class ValidationError(BillingError):
    """A precondition failed before any mutation was attempted.

    The message is user-facing and names the rule that was violated.
    """


class TaskNotFound(BillingError):
    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ModeConflict(BillingError):
    """The task is locked to a billing mode incompatible with the request."""

    def __init__(self, task_id: int, current_mode: str, requested_mode: str):
        super().__init__(
            f"Task {task_id} is set to {current_mode} billing mode and cannot receive {requested_mode} billing"
        )
        self.task_id = task_id
        self.current_mode = current_mode
        self.requested_mode = requested_mode


class OverBilling(BillingError):
    def __init__(self, task_id: int, current_percentage: Any, requested_percentage: Any):
        super().__init__(
            f"Task {task_id} is {current_percentage}% billed; billing {requested_percentage}% more would exceed 100%"
        )
        self.task_id = task_id
        self.current_percentage = current_percentage
        self.requested_percentage = requested_percentage


class ConcurrentBillingUpdate(BillingError):
    """The task ledger kept changing underneath a compare-and-swap write."""

    def __init__(self, task_id: int, attempts: int):
        super().__init__(f"Task {task_id} billing changed concurrently; gave up after {attempts} attempts")
        self.task_id = task_id
        self.attempts = attempts


class PartialFailure(BillingError):
    """Invoice created, but one or more task billings failed."""

    def __init__(self, invoice_id: int, errors: list):
        super().__init__(f"Invoice {invoice_id} created with {len(errors)} task billing errors")
        self.invoice_id = invoice_id
        self.errors = errors


class StepFailure(BillingError):
    """A deletion step failed; ``step`` tells how far the procedure got."""

    def __init__(self, step: str, error: BaseException | str):
        super().__init__(f"{step}: {error}")
        self.step = step
        self.error = error


class ReconciliationWarning(UserWarning):
    """Line item amounts do not reconcile with the invoice total."""


__all__ = [
    "BillingError",
    "ValidationError",
    "TaskNotFound",
    "ModeConflict",
    "OverBilling",
    "ConcurrentBillingUpdate",
    "PartialFailure",
    "StepFailure",
    "ReconciliationWarning",
]
