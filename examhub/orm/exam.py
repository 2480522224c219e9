"""
examhub/orm/exam.py
Exam and Question reference records

Both tables are owned by the exam authoring collaborator. The engine only
reads them: duration and pass threshold drive the attempt lifecycle, price
drives payment reconciliation, and each question's type selects the
comparison rule used by the scoring engine.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Float, Numeric, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship

from examhub.orm.base import BaseModel


class ExamStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class QuestionType(str, Enum):
    SINGLE_CHOICE = "SINGLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"
    MULTI_SELECT = "MULTI_SELECT"
    FREE_TEXT = "FREE_TEXT"
    NUMERIC = "NUMERIC"


class Exam(BaseModel):
    """Immutable exam definition as seen by the engine."""

    __tablename__ = "exams"

    title = Column(String(255), nullable=False)

    duration_minutes = Column(
        Integer,
        nullable=False,
        comment="Allowed duration in minutes"
    )

    pass_threshold = Column(
        Float,
        nullable=False,
        comment="Minimum percentage (0-100) required to pass"
    )

    price = Column(
        Numeric(10, 2),
        nullable=False,
        default=0,
        comment="Price of a single seat"
    )

    status = Column(
        SQLEnum(ExamStatus),
        nullable=False,
        default=ExamStatus.DRAFT,
        index=True
    )

    questions = relationship(
        "Question",
        back_populates="exam",
        order_by="Question.id",
        lazy="selectin"
    )

    def __repr__(self):
        return f"<Exam(id={self.id}, title={self.title!r}, status={self.status})>"


class Question(BaseModel):
    """A question and its answer key."""

    __tablename__ = "questions"

    exam_id = Column(
        Integer,
        ForeignKey("exams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_type = Column(
        SQLEnum(QuestionType),
        nullable=False,
        default=QuestionType.SINGLE_CHOICE
    )

    correct_answer = Column(
        JSON,
        nullable=True,
        comment="Answer key: scalar for choice/text/numeric, list for multi-select"
    )

    points = Column(Integer, nullable=False, default=1)

    tolerance = Column(
        Float,
        nullable=False,
        default=0.0,
        comment="Absolute tolerance for numeric questions"
    )

    exam = relationship("Exam", back_populates="questions")

    def __repr__(self):
        return f"<Question(id={self.id}, exam_id={self.exam_id}, type={self.question_type})>"
