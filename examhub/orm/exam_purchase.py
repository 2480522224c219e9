"""
examhub/orm/exam_purchase.py
Entitlement ledger entries

Each row records seats an academy bought for one exam through one payment.

Key Design:
- payment_reference is UNIQUE: it is the idempotency key for payment
  confirmations delivered more than once
- quantity_consumed never exceeds quantity_purchased (CHECK constraint,
  plus guarded UPDATEs in the ledger service)
- Seats are consumed oldest purchase first
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, Index, CheckConstraint, Enum as SQLEnum
)

from examhub.orm.base import BaseModel


class PurchaseStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class ExamPurchase(BaseModel):
    __tablename__ = "exam_purchases"

    academy_id = Column(Integer, nullable=False, index=True)
    exam_id = Column(Integer, nullable=False, index=True)

    quantity_purchased = Column(Integer, nullable=False)
    quantity_consumed = Column(Integer, nullable=False, default=0)

    payment_reference = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Payment provider reference, unique across all purchases"
    )

    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(
        SQLEnum(PurchaseStatus),
        nullable=False,
        default=PurchaseStatus.ACTIVE
    )

    expires_at = Column(
        DateTime,
        nullable=True,
        comment="Seats cannot be consumed after this instant (NULL = never)"
    )

    __table_args__ = (
        CheckConstraint("quantity_purchased > 0", name="ck_purchase_quantity_positive"),
        CheckConstraint(
            "quantity_consumed >= 0 AND quantity_consumed <= quantity_purchased",
            name="ck_purchase_consumed_within_purchased"
        ),
        Index("ix_purchase_academy_exam", "academy_id", "exam_id", "created_at"),
    )

    @property
    def quantity_available(self) -> int:
        return self.quantity_purchased - self.quantity_consumed

    def __repr__(self):
        return (
            f"<ExamPurchase(id={self.id}, academy={self.academy_id}, exam={self.exam_id}, "
            f"{self.quantity_consumed}/{self.quantity_purchased})>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "academy_id": self.academy_id,
            "exam_id": self.exam_id,
            "quantity_purchased": self.quantity_purchased,
            "quantity_consumed": self.quantity_consumed,
            "quantity_available": self.quantity_available,
            "payment_reference": self.payment_reference,
            "amount_paid": str(self.amount_paid) if self.amount_paid is not None else None,
            "status": self.status.value if self.status else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
