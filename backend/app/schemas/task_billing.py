"""Task billing request schemas."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TaskBillingType(str, Enum):
    MILESTONE = "milestone"
    PERCENTAGE = "percentage"


class TaskBillingRequest(BaseModel):
    """One task's share of an invoice being created."""

    model_config = ConfigDict(frozen=True)

    task_id: int
    billing_type: TaskBillingType
    percentage_to_bill: Decimal = Field(ge=0, le=100)
    amount_to_bill: Decimal = Field(ge=0)
    total_budget: Decimal = Field(default=Decimal("0"), ge=0)
    previous_billed_percentage: Decimal = Decimal("0")
    previous_billed_amount: Decimal = Decimal("0")


class TaskBillingErrorRead(BaseModel):
    task_id: int
    step: str
    message: str
