"""Invoice routes: task-billed creation, deletion with ledger rollback, consolidation."""

from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from backend.app.core.security import get_current_user
from backend.app.db.session import get_db
from backend.app.models.client import Client
from backend.app.models.invoice import Invoice
from backend.app.models.project import Project
from backend.app.models.user import User
from backend.app.schemas.invoice import (
    ConsolidationRead,
    InvoiceCreate,
    InvoiceCreationRead,
    InvoiceDeletionRead,
    InvoiceDetail,
    InvoiceIdList,
    InvoiceRead,
    InvoiceWithTaskBillingCreate,
)
from backend.app.services.consolidation import consolidate_invoices
from backend.app.services.invoice_creation import create_invoice, create_invoice_with_task_billing
from backend.app.services.invoice_deletion import DeletionResult, delete_invoice, delete_invoices
from backend.app.services.reference_numbers import next_invoice_number
from backend.app.services.store import BillingStore

router = APIRouter(prefix="/invoices", tags=["invoices"])


def _header(db: Session, payload: InvoiceCreate, owner_id: int) -> dict:
    client = db.query(Client).filter(Client.id == payload.client_id, Client.owner_id == owner_id).first()
    if not client:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    if payload.project_id is not None:
        project = db.query(Project).filter(Project.id == payload.project_id, Project.owner_id == owner_id).first()
        if not project:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    header = payload.model_dump()
    header["owner_id"] = owner_id
    if not header.get("invoice_number"):
        header["invoice_number"] = next_invoice_number(db, owner_id)
    return header


def _deletion_response(result: DeletionResult) -> InvoiceDeletionRead:
    body = InvoiceDeletionRead(
        success=result.success,
        step=result.step,
        error=result.error,
        rollback_errors=[asdict(err) for err in result.rollback_errors],
    )
    if result.success:
        return body
    if result.step == "validation":
        code = status.HTTP_404_NOT_FOUND if result.error == "Invoice not found" else status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_409_CONFLICT
    raise HTTPException(status_code=code, detail=body.model_dump())


@router.get("/", response_model=List[InvoiceRead])
def list_invoices(
    status: str | None = None,
    client_id: int | None = None,
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = db.query(Invoice).filter(Invoice.owner_id == current_user.id)
    if status:
        query = query.filter(Invoice.status == status)
    if client_id:
        query = query.filter(Invoice.client_id == client_id)
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset(skip).limit(limit).all()


@router.get("/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(invoice_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.owner_id == current_user.id).first()
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice


@router.post("/", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_plain_invoice(payload: InvoiceCreate, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return create_invoice(BillingStore(db), _header(db, payload, current_user.id))


@router.post("/task-billing", response_model=InvoiceCreationRead, status_code=status.HTTP_201_CREATED)
def create_task_billed_invoice(
    payload: InvoiceWithTaskBillingCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    header = _header(db, payload.invoice, current_user.id)
    result = create_invoice_with_task_billing(BillingStore(db), header, payload.task_billings)
    warning = None
    if result.partial_failure:
        warning = f"Invoice created with {len(result.errors)} task billing errors"
    return InvoiceCreationRead(
        invoice=InvoiceRead.model_validate(result.invoice),
        errors=[asdict(err) for err in result.errors],
        fallback_used=result.fallback_used,
        warning=warning,
    )


@router.post("/bulk-delete", response_model=InvoiceDeletionRead)
def bulk_delete_invoices(payload: InvoiceIdList, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _deletion_response(delete_invoices(BillingStore(db), payload.invoice_ids, owner_id=current_user.id))


@router.post("/consolidate", response_model=ConsolidationRead)
def consolidate(payload: InvoiceIdList, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    result = consolidate_invoices(BillingStore(db), payload.invoice_ids, owner_id=current_user.id)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return ConsolidationRead(
        success=True,
        consolidated_invoice=InvoiceRead.model_validate(result.consolidated_invoice),
        warnings=result.warnings,
    )


@router.delete("/{invoice_id}", response_model=InvoiceDeletionRead)
def remove_invoice(invoice_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _deletion_response(delete_invoice(BillingStore(db), invoice_id, owner_id=current_user.id))
