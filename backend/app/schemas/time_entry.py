"""Time entry schemas."""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TimeEntryCreate(BaseModel):
    task_id: Optional[int] = None
    project_id: Optional[int] = None
    hours: Decimal = Field(gt=0)
    entry_date: date
    description: Optional[str] = None


class TimeEntryRead(TimeEntryCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    invoice_id: Optional[int] = None
