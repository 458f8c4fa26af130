"""Invoice model for billing."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True, index=True)
    invoice_number = Column(String(64), nullable=True, index=True)

    status = Column(String, default="draft", nullable=False)
    subtotal = Column(Numeric(12, 2), default=0.00, nullable=False)
    tax_amount = Column(Numeric(12, 2), default=0.00, nullable=False)
    total = Column(Numeric(12, 2), default=0.00, nullable=False)

    # An invoice is either a source (consolidated_into) or a merge result (consolidated_from), never both
    consolidated_into = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    consolidated_from = Column(JSON, nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    owner = relationship("User", back_populates="invoices", foreign_keys=[owner_id])
    client = relationship("Client", back_populates="invoices")
    project = relationship("Project", back_populates="invoices")
    line_items = relationship("InvoiceLineItem", back_populates="invoice", order_by="InvoiceLineItem.sort_order")
    time_entries = relationship("TimeEntry", back_populates="invoice")

    @property
    def is_consolidated_invoice(self) -> bool:
        return bool(self.consolidated_from)
