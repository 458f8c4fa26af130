"""Task model carrying the cumulative billing ledger fields."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from backend.app.db.base_class import Base
from backend.app.core.time import utc_now


class BillingMode(str, Enum):
    UNSET = "unset"
    TIME = "time"
    PERCENTAGE = "percentage"
    MILESTONE = "milestone"


class BillingUnit(str, Enum):
    HOURS = "hours"
    UNIT = "unit"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    # estimated_hours doubles as the quantity for unit-priced tasks
    estimated_hours = Column(Numeric(12, 2), nullable=True)
    estimated_fees = Column(Numeric(12, 2), nullable=True)
    total_budget = Column(Numeric(12, 2), nullable=True)
    billing_unit = Column(String(10), nullable=False, default=BillingUnit.HOURS.value)
    billing_mode = Column(String(20), nullable=False, default=BillingMode.UNSET.value)
    billed_percentage = Column(Numeric(7, 2), nullable=False, default=0)
    billed_amount = Column(Numeric(12, 2), nullable=False, default=0)
    billing_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    project = relationship("Project", back_populates="tasks")
    line_items = relationship("InvoiceLineItem", back_populates="task")
    time_entries = relationship("TimeEntry", back_populates="task")

    @property
    def effective_budget(self):
        if self.total_budget is not None:
            return self.total_budget
        return self.estimated_fees
