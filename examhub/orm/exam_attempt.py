"""
examhub/orm/exam_attempt.py
Timed exam attempt

Tracks one student's timed run through an exam.

Key Design:
- One attempt per enrollment (UNIQUE enrollment_id)
- deadline = started_at + exam duration, stored, never recomputed
- answers is a JSON object keyed by question id (string keys)
- version is the optimistic concurrency counter: every UPDATE checks it, so
  a save and a submit racing on the same row cannot silently drop answers
- No answer modification once the attempt leaves IN_PROGRESS
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Integer, DateTime, Float, JSON, Index, Enum as SQLEnum

from examhub.orm.base import BaseModel


class AttemptStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    EXPIRED = "EXPIRED"
    SCORED = "SCORED"


class ExamAttempt(BaseModel):
    __tablename__ = "exam_attempts"

    enrollment_id = Column(
        Integer,
        nullable=False,
        unique=True,
        comment="Owning enrollment; a second attempt for it is rejected"
    )

    exam_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, nullable=False, index=True)

    status = Column(
        SQLEnum(AttemptStatus),
        nullable=False,
        default=AttemptStatus.NOT_STARTED,
        index=True
    )

    termination = Column(
        SQLEnum(AttemptStatus),
        nullable=True,
        comment="SUBMITTED or EXPIRED: the path that led to scoring"
    )

    started_at = Column(DateTime, nullable=True)
    deadline = Column(DateTime, nullable=True, index=True)

    answers = Column(JSON, nullable=False, default=dict)
    last_saved_at = Column(DateTime, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    score = Column(Float, nullable=True, comment="Percentage once scored")

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_attempt_status_deadline", "status", "deadline"),
    )

    def __repr__(self):
        return f"<ExamAttempt(id={self.id}, enrollment={self.enrollment_id}, status={self.status})>"

    def get_remaining_seconds(self, now: datetime) -> int:
        """Seconds left before the nominal deadline (0 when not running)."""
        if self.status != AttemptStatus.IN_PROGRESS or self.deadline is None:
            return 0
        return max(0, int((self.deadline - now).total_seconds()))

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "id": self.id,
            "enrollment_id": self.enrollment_id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "status": self.status.value,
            "termination": self.termination.value if self.termination else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "answers": dict(self.answers or {}),
            "last_saved_at": self.last_saved_at.isoformat() if self.last_saved_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "expired_at": self.expired_at.isoformat() if self.expired_at else None,
            "score": self.score,
        }
        if now is not None:
            data["remaining_seconds"] = self.get_remaining_seconds(now)
        return data
