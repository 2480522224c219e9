"""
Pydantic Schemas for payment provider events
"""
from decimal import Decimal

from pydantic import BaseModel, Field


class PaymentConfirmedPayload(BaseModel):
    """Body of a "payment confirmed" webhook delivery."""
    academy_id: int = Field(..., gt=0)
    exam_id: int = Field(..., gt=0)
    quantity: int = Field(..., description="Seats bought; non-positive values are rejected and retained")
    payment_reference: str = Field(..., min_length=1, max_length=255, description="Provider payment id")
    amount: Decimal = Field(..., description="Amount charged, in the exam's currency")
