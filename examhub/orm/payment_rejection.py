"""
examhub/orm/payment_rejection.py
Rejected payment confirmations, kept for manual review.
"""
from sqlalchemy import Column, Integer, String, Text, Numeric

from examhub.orm.base import BaseModel


class PaymentRejection(BaseModel):
    __tablename__ = "payment_rejections"

    payment_reference = Column(String(255), nullable=False, index=True)
    academy_id = Column(Integer, nullable=True, index=True)
    exam_id = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    expected_amount = Column(Numeric(10, 2), nullable=True)
    reason = Column(Text, nullable=False)

    def __repr__(self):
        return f"<PaymentRejection(id={self.id}, ref={self.payment_reference!r})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_reference": self.payment_reference,
            "academy_id": self.academy_id,
            "exam_id": self.exam_id,
            "quantity": self.quantity,
            "amount": str(self.amount) if self.amount is not None else None,
            "expected_amount": str(self.expected_amount) if self.expected_amount is not None else None,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
