"""Time entry recording; the first entry on a task locks it to time billing."""

import structlog
from sqlalchemy.orm import Session

from backend.app.models.time_entry import TimeEntry
from backend.app.services.billing_state import TaskBillingState
from backend.app.services.store import BillingStore

LOGGER = structlog.get_logger(__name__)


def create_time_entry(db: Session, owner_id: int, **fields) -> TimeEntry:
    task_id = fields.get("task_id")
    if task_id is not None:
        task = TaskBillingState(BillingStore(db)).lock_time_mode(task_id)
        if fields.get("project_id") is None:
            fields["project_id"] = task.project_id

    entry = TimeEntry(owner_id=owner_id, **fields)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    LOGGER.info("time_entry_created", time_entry_id=entry.id, task_id=task_id)
    return entry
