"""
examhub/orm/exam_result.py
Scored outcome of an attempt. Written exactly once (UNIQUE attempt_id).
"""
from sqlalchemy import Column, Integer, Float, Boolean, JSON

from examhub.orm.base import BaseModel


class ExamResult(BaseModel):
    __tablename__ = "exam_results"

    attempt_id = Column(Integer, nullable=False, unique=True)

    raw_score = Column(Float, nullable=False)
    max_score = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    passed = Column(Boolean, nullable=False)

    breakdown = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Per question: question_id, status, points_awarded, points_possible"
    )

    def __repr__(self):
        return f"<ExamResult(attempt={self.attempt_id}, {self.percentage}%, passed={self.passed})>"

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "raw_score": self.raw_score,
            "max_score": self.max_score,
            "percentage": self.percentage,
            "passed": self.passed,
            "breakdown": list(self.breakdown or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
