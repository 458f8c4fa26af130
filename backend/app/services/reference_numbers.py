"""Human-readable invoice numbers."""

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from backend.app.core.time import epoch_millis
from backend.app.models.invoice import Invoice


def consolidated_invoice_number(now: datetime | None = None) -> str:
    return f"CONS-{str(epoch_millis(now))[-6:]}"


def next_invoice_number(db: Session, owner_id: int) -> str:
    count = db.query(func.count(Invoice.id)).filter(Invoice.owner_id == owner_id).scalar() or 0
    return f"INV-{count + 1:05d}"
