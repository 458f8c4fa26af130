"""Row-level access to the billing tables.

Every public method is its own unit of work: it commits on success and rolls
back on failure, so orchestrators built on top of the store never hold a
multi-statement transaction. Calls run through the retry policy, which only
repeats transient store failures.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from backend.app.core.retry import RetryPolicy, with_retry
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_line_item import InvoiceLineItem
from backend.app.models.project import Project
from backend.app.models.task import Task
from backend.app.models.time_entry import TimeEntry


class BillingStore:
    def __init__(self, db: Session, retry_policy: RetryPolicy | None = None):
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()

    @contextmanager
    def _unit_of_work(self):
        try:
            yield self.db
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # Tasks

    @with_retry
    def get_task(self, task_id: int) -> Task | None:
        with self._unit_of_work() as db:
            return db.get(Task, task_id)

    @with_retry
    def list_project_tasks(self, project_id: int) -> List[Task]:
        with self._unit_of_work() as db:
            return db.query(Task).filter(Task.project_id == project_id).order_by(Task.created_at.asc(), Task.id.asc()).all()

    @with_retry
    def list_billed_tasks(self, project_id: int) -> List[Task]:
        with self._unit_of_work() as db:
            return (
                db.query(Task)
                .filter(Task.project_id == project_id, Task.billed_amount > 0)
                .order_by(Task.id.asc())
                .all()
            )

    @with_retry
    def compare_and_set_task(self, task_id: int, expected_version: int, values: Dict[str, Any]) -> bool:
        """Write ``values`` only if the task is still at ``expected_version``."""
        with self._unit_of_work() as db:
            result = db.execute(
                update(Task)
                .where(Task.id == task_id, Task.billing_version == expected_version)
                .values(billing_version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # Projects

    @with_retry
    def get_project(self, project_id: int) -> Project | None:
        with self._unit_of_work() as db:
            return db.get(Project, project_id)

    # Invoices

    @with_retry
    def get_invoice(self, invoice_id: int, owner_id: int | None = None) -> Invoice | None:
        with self._unit_of_work() as db:
            query = db.query(Invoice).filter(Invoice.id == invoice_id)
            if owner_id is not None:
                query = query.filter(Invoice.owner_id == owner_id)
            return query.first()

    @with_retry
    def get_invoices(self, invoice_ids: Sequence[int], owner_id: int | None = None) -> List[Invoice]:
        if not invoice_ids:
            return []
        with self._unit_of_work() as db:
            query = db.query(Invoice).filter(Invoice.id.in_(list(invoice_ids)))
            if owner_id is not None:
                query = query.filter(Invoice.owner_id == owner_id)
            return query.order_by(Invoice.id.asc()).all()

    @with_retry
    def list_project_invoice_ids(self, project_id: int) -> List[int]:
        with self._unit_of_work() as db:
            return [row.id for row in db.query(Invoice.id).filter(Invoice.project_id == project_id).all()]

    @with_retry
    def insert_invoice(self, **fields) -> Invoice:
        with self._unit_of_work() as db:
            invoice = Invoice(**fields)
            db.add(invoice)
        return invoice

    @with_retry
    def update_invoices(self, invoice_ids: Sequence[int], **values) -> int:
        if not invoice_ids:
            return 0
        with self._unit_of_work() as db:
            result = db.execute(
                update(Invoice)
                .where(Invoice.id.in_(list(invoice_ids)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    @with_retry
    def delete_invoices(self, invoice_ids: Sequence[int]) -> int:
        if not invoice_ids:
            return 0
        with self._unit_of_work() as db:
            return db.query(Invoice).filter(Invoice.id.in_(list(invoice_ids))).delete(synchronize_session="fetch")

    # Line items

    @with_retry
    def list_line_items(self, invoice_ids: Iterable[int], task_only: bool = False) -> List[InvoiceLineItem]:
        ids = list(invoice_ids)
        if not ids:
            return []
        with self._unit_of_work() as db:
            query = db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id.in_(ids))
            if task_only:
                query = query.filter(InvoiceLineItem.task_id.isnot(None))
            return query.order_by(InvoiceLineItem.invoice_id.asc(), InvoiceLineItem.sort_order.asc(), InvoiceLineItem.id.asc()).all()

    @with_retry
    def count_line_items(self, invoice_id: int) -> int:
        with self._unit_of_work() as db:
            return db.query(func.count(InvoiceLineItem.id)).filter(InvoiceLineItem.invoice_id == invoice_id).scalar() or 0

    @with_retry
    def insert_line_item(self, **fields) -> InvoiceLineItem:
        with self._unit_of_work() as db:
            item = InvoiceLineItem(**fields)
            db.add(item)
        return item

    @with_retry
    def insert_line_items(self, rows: Sequence[Dict[str, Any]]) -> List[InvoiceLineItem]:
        if not rows:
            return []
        with self._unit_of_work() as db:
            items = [InvoiceLineItem(**row) for row in rows]
            db.add_all(items)
        return items

    @with_retry
    def delete_line_items(self, invoice_ids: Sequence[int]) -> int:
        if not invoice_ids:
            return 0
        with self._unit_of_work() as db:
            return (
                db.query(InvoiceLineItem)
                .filter(InvoiceLineItem.invoice_id.in_(list(invoice_ids)))
                .delete(synchronize_session="fetch")
            )

    @with_retry
    def sum_line_items(self, invoice_id: int) -> Decimal:
        with self._unit_of_work() as db:
            total = db.query(func.coalesce(func.sum(InvoiceLineItem.amount), 0)).filter(
                InvoiceLineItem.invoice_id == invoice_id
            ).scalar()
            return Decimal(str(total)).quantize(Decimal("0.01"))

    # Time entries

    @with_retry
    def detach_time_entries(self, invoice_ids: Sequence[int]) -> int:
        if not invoice_ids:
            return 0
        with self._unit_of_work() as db:
            result = db.execute(
                update(TimeEntry)
                .where(TimeEntry.invoice_id.in_(list(invoice_ids)))
                .values(invoice_id=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
