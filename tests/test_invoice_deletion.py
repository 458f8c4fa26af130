import pytest
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from backend.app.core.errors import StepFailure
from backend.app.core.retry import no_retry
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.client import Client
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_line_item import InvoiceLineItem
from backend.app.models.project import Project
from backend.app.models.task import Task
from backend.app.models.time_entry import TimeEntry
from backend.app.models.user import User
from backend.app.schemas.task_billing import TaskBillingRequest
from backend.app.services.billing_state import TaskBillingState
from backend.app.services.invoice_creation import create_invoice_with_task_billing
from backend.app.services.invoice_deletion import CONSOLIDATED_SOURCE_MESSAGE, delete_invoice, delete_invoices
from backend.app.services.store import BillingStore


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


class LineItemDeleteFails(BillingStore):
    def delete_line_items(self, invoice_ids):
        raise OperationalError("DELETE FROM invoice_line_items", {}, Exception("timeout"))


class SourceRevertFails(BillingStore):
    def update_invoices(self, invoice_ids, **values):
        raise OperationalError("UPDATE invoices", {}, Exception("timeout"))


class CountingLedger(TaskBillingState):
    def __init__(self, store):
        super().__init__(store)
        self.retreats = []

    def retreat(self, task_id, delta_percentage, delta_amount):
        self.retreats.append((task_id, delta_percentage, delta_amount))
        return super().retreat(task_id, delta_percentage, delta_amount)


def _project(db) -> Project:
    user = User(email="deleter@example.com", hashed_password="x")
    db.add(user)
    db.commit()
    client = Client(owner_id=user.id, name="Acme")
    db.add(client)
    db.commit()
    project = Project(owner_id=user.id, client_id=client.id, name="Website")
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def _task(db, project, **fields) -> Task:
    task = Task(project_id=project.id, name=fields.pop("name", "Design"), estimated_fees=Decimal("1000"), **fields)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def _bill(store, project, task, pct, amount, number="INV-00001"):
    result = create_invoice_with_task_billing(
        store,
        {
            "owner_id": project.owner_id,
            "client_id": project.client_id,
            "project_id": project.id,
            "invoice_number": number,
            "subtotal": amount,
            "total": amount,
        },
        [
            TaskBillingRequest(
                task_id=task.id,
                billing_type="percentage",
                percentage_to_bill=pct,
                amount_to_bill=amount,
                total_budget=Decimal("1000"),
            )
        ],
    )
    assert not result.errors
    return result.invoice.id


def _plain_invoice(db, project, **fields) -> Invoice:
    invoice = Invoice(owner_id=project.owner_id, client_id=project.client_id, **fields)
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    return invoice


def test_delete_restores_ledger_to_before_creation():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project, billing_mode="percentage", billed_percentage=Decimal("10"), billed_amount=Decimal("100"))
        store = BillingStore(db, retry_policy=no_retry())
        invoice_id = _bill(store, project, task, Decimal("30"), Decimal("300.00"))
        db.add(TimeEntry(owner_id=project.owner_id, invoice_id=invoice_id, hours=Decimal("2"), entry_date=date(2030, 1, 1)))
        db.commit()

        db.refresh(task)
        assert task.billed_percentage == Decimal("40")

        result = delete_invoice(store, invoice_id, owner_id=project.owner_id)
        assert result.success
        assert result.rollback_errors == []

        db.refresh(task)
        assert task.billed_percentage == Decimal("10")
        assert task.billed_amount == Decimal("100")
        assert db.get(Invoice, invoice_id) is None
        assert db.query(InvoiceLineItem).count() == 0
        entry = db.query(TimeEntry).one()
        assert entry.invoice_id is None
    finally:
        db.close()


def test_delete_clamps_ledger_at_zero():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project)
        store = BillingStore(db, retry_policy=no_retry())
        invoice_id = _bill(store, project, task, Decimal("30"), Decimal("300.00"))

        # ledger drifted below what the invoice contributed
        db.query(Task).filter(Task.id == task.id).update({"billed_percentage": Decimal("10"), "billed_amount": Decimal("50")})
        db.commit()

        assert delete_invoice(store, invoice_id).success
        db.refresh(task)
        assert task.billed_percentage == Decimal("0")
        assert task.billed_amount == Decimal("0")
    finally:
        db.close()


def test_delete_refuses_consolidated_source():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project)
        store = BillingStore(db, retry_policy=no_retry())
        source_id = _bill(store, project, task, Decimal("20"), Decimal("200.00"))
        target = _plain_invoice(db, project, invoice_number="CONS-000001", consolidated_from=[source_id])
        store.update_invoices([source_id], consolidated_into=target.id, status="consolidated")

        result = delete_invoice(store, source_id)
        assert not result.success
        assert result.step == "validation"
        assert result.error == CONSOLIDATED_SOURCE_MESSAGE
        with pytest.raises(StepFailure):
            result.raise_for_failure()

        assert db.get(Invoice, source_id) is not None
        assert db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id == source_id).count() == 1
        db.refresh(task)
        assert task.billed_percentage == Decimal("20")
    finally:
        db.close()


def test_delete_missing_invoice():
    db = SessionLocal()
    try:
        result = delete_invoice(BillingStore(db, retry_policy=no_retry()), 12345)
        assert not result.success
        assert result.step == "validation"
        assert result.error == "Invoice not found"
    finally:
        db.close()


def test_delete_consolidated_invoice_reverts_sources():
    db = SessionLocal()
    try:
        project = _project(db)
        first = _plain_invoice(db, project, invoice_number="INV-00001", total=Decimal("10"))
        second = _plain_invoice(db, project, invoice_number="INV-00002", total=Decimal("20"))
        target = _plain_invoice(db, project, invoice_number="CONS-000001", consolidated_from=[first.id, second.id])
        store = BillingStore(db, retry_policy=no_retry())
        store.update_invoices([first.id, second.id], consolidated_into=target.id, status="consolidated")

        target_id = target.id
        result = delete_invoice(store, target_id)
        assert result.success

        for source in (first, second):
            db.refresh(source)
            assert source.status == "draft"
            assert source.consolidated_into is None
        assert db.get(Invoice, target_id) is None
    finally:
        db.close()


def test_source_revert_failure_does_not_block_deletion():
    db = SessionLocal()
    try:
        project = _project(db)
        source = _plain_invoice(db, project, invoice_number="INV-00001", status="consolidated")
        target = _plain_invoice(db, project, invoice_number="CONS-000001", consolidated_from=[source.id])
        source.consolidated_into = target.id
        db.commit()

        target_id = target.id
        result = delete_invoice(SourceRevertFails(db, retry_policy=no_retry()), target_id)
        assert result.success
        assert db.get(Invoice, target_id) is None
        db.refresh(source)
        assert source.status == "consolidated"
    finally:
        db.close()


def test_step_failure_reports_step_and_leaves_ledger():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project)
        invoice_id = _bill(BillingStore(db, retry_policy=no_retry()), project, task, Decimal("30"), Decimal("300.00"))
        db.add(TimeEntry(owner_id=project.owner_id, invoice_id=invoice_id, hours=Decimal("1"), entry_date=date(2030, 1, 2)))
        db.commit()

        result = delete_invoice(LineItemDeleteFails(db, retry_policy=no_retry()), invoice_id)
        assert not result.success
        assert result.step == "line_items"
        assert "timeout" in result.error

        # earlier steps stay done, later ones never ran
        assert db.query(TimeEntry).one().invoice_id is None
        assert db.get(Invoice, invoice_id) is not None
        assert db.query(InvoiceLineItem).count() == 1
        db.refresh(task)
        assert task.billed_percentage == Decimal("30")
    finally:
        db.close()


def test_bulk_delete_rolls_each_task_back_once():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project)
        other = _task(db, project, name="Build")
        store = BillingStore(db, retry_policy=no_retry())
        first = _bill(store, project, task, Decimal("20"), Decimal("200.00"), number="INV-00001")
        second = _bill(store, project, task, Decimal("15"), Decimal("150.00"), number="INV-00002")
        third = _bill(store, project, other, Decimal("50"), Decimal("500.00"), number="INV-00003")
        ledger = CountingLedger(store)

        result = delete_invoices(store, [first, second, first], ledger=ledger)
        assert result.success
        assert [(task_id, pct) for task_id, pct, _ in ledger.retreats] == [(task.id, Decimal("35.00"))]

        db.refresh(task)
        db.refresh(other)
        assert task.billed_percentage == Decimal("0")
        assert other.billed_percentage == Decimal("50")
        assert db.get(Invoice, third) is not None
        assert db.query(Invoice).count() == 1
    finally:
        db.close()


def test_bulk_delete_validation():
    db = SessionLocal()
    try:
        project = _project(db)
        store = BillingStore(db, retry_policy=no_retry())
        source = _plain_invoice(db, project, invoice_number="INV-00007")
        target = _plain_invoice(db, project, invoice_number="CONS-000001", consolidated_from=[source.id])
        store.update_invoices([source.id], consolidated_into=target.id, status="consolidated")

        assert delete_invoices(store, []).success

        missing = delete_invoices(store, [source.id, 9999])
        assert missing.error == "Some invoices could not be found"

        refused = delete_invoices(store, [source.id, target.id])
        assert refused.step == "validation"
        assert refused.error == (
            "Cannot delete invoices that have been consolidated: INV-00007. Delete the consolidated invoice first."
        )
        assert db.query(Invoice).count() == 2
    finally:
        db.close()


def test_sub_cent_billing_round_trips():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project, billing_mode="percentage", billed_percentage=Decimal("20"), billed_amount=Decimal("100"))
        store = BillingStore(db, retry_policy=no_retry())
        invoice_id = _bill(store, project, task, Decimal("10.005"), Decimal("10.005"))

        item = db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id == invoice_id).one()
        assert item.billed_percentage == Decimal("10.01")
        assert item.amount == Decimal("10.01")
        db.refresh(task)
        assert task.billed_percentage == Decimal("30.01")
        assert task.billed_amount == Decimal("110.01")

        assert delete_invoice(store, invoice_id).success
        db.refresh(task)
        assert task.billed_percentage == Decimal("20.00")
        assert task.billed_amount == Decimal("100.00")
    finally:
        db.close()


def test_deleted_invoice_leaves_the_session():
    db = SessionLocal()
    try:
        project = _project(db)
        invoice = _plain_invoice(db, project, invoice_number="INV-00009")
        invoice_id = invoice.id
        db.add(InvoiceLineItem(invoice_id=invoice_id, description="Retainer", amount=Decimal("25")))
        db.commit()
        item = db.query(InvoiceLineItem).one()

        assert delete_invoice(BillingStore(db, retry_policy=no_retry()), invoice_id).success
        assert invoice not in db
        assert item not in db
        assert db.get(Invoice, invoice_id) is None
        assert db.query(InvoiceLineItem).count() == 0
    finally:
        db.close()
