"""
Pydantic Schemas for enrollments
"""
from typing import Optional

from pydantic import BaseModel, Field


class EnrollRequest(BaseModel):
    """Self-enrollment (student) or assignment (academy)."""
    exam_id: int = Field(..., gt=0, description="Exam to enroll in")
    student_id: Optional[int] = Field(
        None,
        gt=0,
        description="Student to assign; required for academy callers, ignored for students"
    )
