"""
Pydantic Schemas for exam attempts

Answers are a mapping of question id to answer payload. The payload shape
depends on the question type (a choice id, a list of choice ids, text or a
number) and is checked only at scoring time.
"""
from typing import Any, Dict

from pydantic import BaseModel, Field, field_validator


class AnswersRequest(BaseModel):
    answers: Dict[str, Any] = Field(
        default_factory=dict,
        description="Question id → answer payload"
    )

    @field_validator("answers")
    @classmethod
    def question_ids_are_numeric(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for question_id in value:
            if not str(question_id).strip().isdigit():
                raise ValueError(f"Answer key '{question_id}' is not a question id")
        return {str(int(k)): v for k, v in value.items()}


class SaveProgressRequest(AnswersRequest):
    """Partial answers; merged into the stored ones."""
    pass


class SubmitRequest(AnswersRequest):
    """Final answers; merged before scoring."""
    pass
