"""
examhub/orm/certificate.py
Certificate record issued for a passing result. Rendering happens elsewhere.
"""
from sqlalchemy import Column, Integer, String, DateTime

from examhub.orm.base import BaseModel, utcnow


class Certificate(BaseModel):
    __tablename__ = "certificates"

    enrollment_id = Column(Integer, nullable=False, unique=True)
    attempt_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    exam_id = Column(Integer, nullable=False)
    academy_id = Column(Integer, nullable=False, index=True)

    certificate_number = Column(String(32), nullable=False, unique=True)
    issued_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Certificate(number={self.certificate_number}, student={self.student_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "certificate_number": self.certificate_number,
            "enrollment_id": self.enrollment_id,
            "attempt_id": self.attempt_id,
            "student_id": self.student_id,
            "exam_id": self.exam_id,
            "academy_id": self.academy_id,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
        }
