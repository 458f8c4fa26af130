"""Invoice schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.app.schemas.task_billing import TaskBillingErrorRead, TaskBillingRequest


class InvoiceBase(BaseModel):
    client_id: int
    project_id: Optional[int] = None
    invoice_number: Optional[str] = None
    # "consolidated" is only ever set by consolidation
    status: Literal["draft", "sent", "paid", "void"] = "draft"
    subtotal: Decimal = Field(default=Decimal("0.00"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    total: Decimal = Field(default=Decimal("0.00"), ge=0)
    due_date: Optional[datetime] = None


class InvoiceCreate(InvoiceBase):
    pass


class InvoiceWithTaskBillingCreate(BaseModel):
    invoice: InvoiceCreate
    task_billings: List[TaskBillingRequest] = Field(default_factory=list)


class InvoiceLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    task_id: Optional[int] = None
    description: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    unit: Optional[str] = None
    billing_type: Optional[str] = None
    billed_percentage: Optional[Decimal] = None
    task_total_budget: Optional[Decimal] = None
    sort_order: int


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    client_id: int
    project_id: Optional[int] = None
    invoice_number: Optional[str] = None

    status: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    due_date: Optional[datetime]
    consolidated_into: Optional[int] = None
    consolidated_from: Optional[List[int]] = None

    created_at: datetime
    updated_at: datetime


class InvoiceDetail(InvoiceRead):
    line_items: List[InvoiceLineItemRead] = Field(default_factory=list)


class InvoiceCreationRead(BaseModel):
    invoice: InvoiceRead
    errors: List[TaskBillingErrorRead] = Field(default_factory=list)
    fallback_used: bool = False
    warning: Optional[str] = None


class InvoiceIdList(BaseModel):
    invoice_ids: List[int]


class InvoiceDeletionRead(BaseModel):
    success: bool
    step: Optional[str] = None
    error: Optional[str] = None
    rollback_errors: List[TaskBillingErrorRead] = Field(default_factory=list)


class ConsolidationRead(BaseModel):
    success: bool
    consolidated_invoice: Optional[InvoiceRead] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
