"""
examhub/orm/enrollment.py
Student enrollment in an exam

An enrollment exists only because one ledger seat was consumed for it.

Lifecycle:
1. Enrollment manager debits a seat → enrollment created (PENDING)
2. Student starts the attempt → IN_PROGRESS
3. Attempt submitted or expired and scored → COMPLETED
"""
from enum import Enum

from sqlalchemy import Column, Integer, Boolean, DateTime, Index, Enum as SQLEnum

from examhub.orm.base import BaseModel


class EnrollmentStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


ACTIVE_ENROLLMENT_STATUSES = (EnrollmentStatus.PENDING, EnrollmentStatus.IN_PROGRESS)


class Enrollment(BaseModel):
    __tablename__ = "enrollments"

    student_id = Column(Integer, nullable=False, index=True)
    exam_id = Column(Integer, nullable=False, index=True)
    academy_id = Column(Integer, nullable=False, index=True)

    status = Column(
        SQLEnum(EnrollmentStatus),
        nullable=False,
        default=EnrollmentStatus.PENDING,
        index=True
    )

    is_assigned = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True when the academy assigned the student rather than self-enrollment"
    )

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_enrollment_student_exam", "student_id", "exam_id", "status"),
        # At most one PENDING or IN_PROGRESS enrollment per (student, exam)
        Index(
            "uq_enrollment_active",
            "student_id",
            "exam_id",
            unique=True,
            sqlite_where=status.in_(ACTIVE_ENROLLMENT_STATUSES),
            postgresql_where=status.in_(ACTIVE_ENROLLMENT_STATUSES),
        ),
    )

    def __repr__(self):
        return f"<Enrollment(id={self.id}, student={self.student_id}, exam={self.exam_id}, status={self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "exam_id": self.exam_id,
            "academy_id": self.academy_id,
            "status": self.status.value,
            "is_assigned": self.is_assigned,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
