"""
Payload schemas for the built-in job types.

Producers and handlers agree on these privately; the queue itself only
sees the serialized JSON text.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class EmailPayload(BaseModel):
    """Payload for SendEmail jobs."""

    to: str = Field(..., min_length=3)
    subject: str = ""
    body: str = ""
    is_html: bool = True


class PaymentPayload(BaseModel):
    """Payload for ProcessPayment jobs."""

    transaction_id: str = Field(..., min_length=1)
    amount: Decimal
    user_id: str


class ReportPayload(BaseModel):
    """Payload for GenerateReport jobs."""

    report_type: str = Field(..., min_length=1)
    user_id: str
    start_date: datetime | None = None
    end_date: datetime | None = None

    @model_validator(mode="after")
    def check_range(self) -> "ReportPayload":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
