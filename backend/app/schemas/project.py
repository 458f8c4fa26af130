"""Project and task schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProjectCreate(BaseModel):
    client_id: int
    name: str


class ProjectRead(ProjectCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    created_at: datetime


class TaskCreate(BaseModel):
    name: str
    estimated_hours: Optional[Decimal] = Field(default=None, ge=0)
    estimated_fees: Optional[Decimal] = Field(default=None, ge=0)
    total_budget: Optional[Decimal] = Field(default=None, ge=0)
    billing_unit: Literal["hours", "unit"] = "hours"


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    estimated_hours: Optional[Decimal] = None
    estimated_fees: Optional[Decimal] = None
    total_budget: Optional[Decimal] = None
    billing_unit: str
    billing_mode: str
    billed_percentage: Decimal
    billed_amount: Decimal


class TaskBillingRead(TaskRead):
    """Task with billed totals recomputed from existing invoices."""

    total_budget: Decimal
