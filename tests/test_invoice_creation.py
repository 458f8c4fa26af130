import pytest
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from backend.app.core.errors import PartialFailure
from backend.app.core.retry import no_retry
from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.models.client import Client
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_line_item import InvoiceLineItem
from backend.app.models.project import Project
from backend.app.models.task import Task
from backend.app.models.user import User
from backend.app.schemas.task_billing import TaskBillingRequest
from backend.app.services.invoice_creation import create_invoice_with_task_billing
from backend.app.services.store import BillingStore


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


class BrokenHeaderStore(BillingStore):
    def insert_invoice(self, **fields):
        raise OperationalError("INSERT INTO invoices", {}, Exception("connection reset"))


def _project(db) -> Project:
    user = User(email="creator@example.com", hashed_password="x")
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


def _task(db, project, name, **fields) -> Task:
    task = Task(project_id=project.id, name=name, **fields)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def _header(project, subtotal) -> dict:
    return {
        "owner_id": project.owner_id,
        "client_id": project.client_id,
        "project_id": project.id,
        "invoice_number": "INV-00001",
        "subtotal": subtotal,
        "tax_amount": Decimal("0"),
        "total": subtotal,
    }


def _request(task_id, pct, amount, billing_type="percentage") -> TaskBillingRequest:
    return TaskBillingRequest(
        task_id=task_id,
        billing_type=billing_type,
        percentage_to_bill=pct,
        amount_to_bill=amount,
        total_budget=Decimal("1000"),
    )


def test_every_task_billed_gets_a_line():
    db = SessionLocal()
    try:
        project = _project(db)
        design = _task(db, project, "Design", estimated_hours=Decimal("10"), estimated_fees=Decimal("1000"))
        build = _task(db, project, "Build", estimated_fees=Decimal("1000"))
        store = BillingStore(db, retry_policy=no_retry())

        result = create_invoice_with_task_billing(
            store,
            _header(project, Decimal("350.00")),
            [
                _request(design.id, Decimal("25"), Decimal("250.00")),
                _request(build.id, Decimal("10"), Decimal("100.00"), billing_type="milestone"),
            ],
        )

        assert not result.errors
        assert not result.fallback_used
        result.raise_for_errors()

        items = db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id == result.invoice.id).all()
        assert len(items) == 2
        assert sum(item.amount for item in items) == Decimal("350.00")
        assert store.sum_line_items(result.invoice.id) == Decimal("350.00")

        db.refresh(design)
        db.refresh(build)
        assert design.billing_mode == "percentage"
        assert design.billed_percentage == Decimal("25")
        assert design.billed_amount == Decimal("250")
        assert build.billing_mode == "milestone"
        assert build.billed_percentage == Decimal("10")
    finally:
        db.close()


def test_all_tasks_failing_leaves_single_fallback_line():
    db = SessionLocal()
    try:
        project = _project(db)
        first = _task(db, project, "Support", billing_mode="time")
        second = _task(db, project, "Hosting", billing_mode="time")

        result = create_invoice_with_task_billing(
            BillingStore(db, retry_policy=no_retry()),
            _header(project, Decimal("300.00")),
            [
                _request(first.id, Decimal("20"), Decimal("200.00")),
                _request(second.id, Decimal("10"), Decimal("100.00")),
            ],
        )

        assert result.fallback_used
        assert [err.task_id for err in result.errors] == [first.id, second.id]
        assert all(err.step == "validation" for err in result.errors)

        items = db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id == result.invoice.id).all()
        assert len(items) == 1
        assert items[0].task_id is None
        assert items[0].description == "2 tasks billed"
        assert items[0].amount == Decimal("300.00")

        db.refresh(first)
        assert first.billing_mode == "time"
        assert first.billed_percentage == Decimal("0")
    finally:
        db.close()


def test_partial_failure_keeps_good_lines_and_reports_errors():
    db = SessionLocal()
    try:
        project = _project(db)
        good = _task(db, project, "Design", estimated_fees=Decimal("1000"))
        full = _task(db, project, "Launch", billing_mode="milestone", billed_percentage=Decimal("95"))

        result = create_invoice_with_task_billing(
            BillingStore(db, retry_policy=no_retry()),
            _header(project, Decimal("350.00")),
            [
                _request(good.id, Decimal("25"), Decimal("250.00")),
                _request(full.id, Decimal("10"), Decimal("100.00"), billing_type="milestone"),
                _request(4040, Decimal("5"), Decimal("50.00")),
            ],
        )

        assert result.partial_failure
        assert not result.fallback_used
        steps = {err.task_id: err.step for err in result.errors}
        assert steps == {full.id: "validation", 4040: "task_update"}
        assert "exceed 100%" in result.errors[0].message

        with pytest.raises(PartialFailure) as exc_info:
            result.raise_for_errors()
        assert exc_info.value.invoice_id == result.invoice.id

        db.refresh(good)
        db.refresh(full)
        assert good.billed_percentage == Decimal("25")
        assert full.billed_percentage == Decimal("95")
    finally:
        db.close()


def test_header_failure_writes_nothing():
    db = SessionLocal()
    try:
        project = _project(db)
        task = _task(db, project, "Design")

        with pytest.raises(OperationalError):
            create_invoice_with_task_billing(
                BrokenHeaderStore(db, retry_policy=no_retry()),
                _header(project, Decimal("100.00")),
                [_request(task.id, Decimal("10"), Decimal("100.00"))],
            )

        assert db.query(Invoice).count() == 0
        assert db.query(InvoiceLineItem).count() == 0
        db.refresh(task)
        assert task.billing_mode == "unset"
    finally:
        db.close()


def test_no_requests_still_gets_a_line():
    db = SessionLocal()
    try:
        project = _project(db)
        result = create_invoice_with_task_billing(
            BillingStore(db, retry_policy=no_retry()),
            _header(project, Decimal("80.00")),
            [],
        )
        assert result.fallback_used
        items = db.query(InvoiceLineItem).filter(InvoiceLineItem.invoice_id == result.invoice.id).all()
        assert [(item.description, item.amount) for item in items] == [("0 tasks billed", Decimal("80.00"))]
    finally:
        db.close()
