"""
examhub/services/outcomes.py
Discriminated outcomes returned by every engine operation

Services never raise for caller-recoverable conditions. They return an
OperationResult whose `outcome` names exactly what happened, and the HTTP
layer maps each outcome to a status code through one table
(examhub.errors.OUTCOME_HTTP_STATUS).

Taxonomy:
- Success:        OK, CREDITED, ALREADY_SUBMITTED (carries the existing result)
- Capacity:       INSUFFICIENT_SEATS
- State conflict: ALREADY_ENROLLED, ALREADY_STARTED, ENROLLMENT_NOT_PENDING,
                  EXAM_NOT_PUBLISHED
- Timing:         DEADLINE_PASSED
- Integrity:      REJECTED, DUPLICATE, ALREADY_CREDITED
- Not found:      NOT_FOUND
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Outcome(str, Enum):
    OK = "OK"
    CREDITED = "CREDITED"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"

    INSUFFICIENT_SEATS = "INSUFFICIENT_SEATS"

    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    ALREADY_STARTED = "ALREADY_STARTED"
    ENROLLMENT_NOT_PENDING = "ENROLLMENT_NOT_PENDING"
    EXAM_NOT_PUBLISHED = "EXAM_NOT_PUBLISHED"

    DEADLINE_PASSED = "DEADLINE_PASSED"

    REJECTED = "REJECTED"
    DUPLICATE = "DUPLICATE"
    ALREADY_CREDITED = "ALREADY_CREDITED"

    NOT_FOUND = "NOT_FOUND"


# Outcomes after which the caller holds a usable payload.
# DUPLICATE and ALREADY_CREDITED are idempotent replays, not failures.
SUCCESS_OUTCOMES = frozenset({
    Outcome.OK,
    Outcome.CREDITED,
    Outcome.ALREADY_SUBMITTED,
    Outcome.DUPLICATE,
    Outcome.ALREADY_CREDITED,
})


@dataclass(frozen=True)
class OperationResult:
    outcome: Outcome
    data: Optional[Any] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES

    @classmethod
    def success(cls, data: Any = None, outcome: Outcome = Outcome.OK, message: Optional[str] = None) -> "OperationResult":
        return cls(outcome=outcome, data=data, message=message)

    @classmethod
    def failure(cls, outcome: Outcome, message: str, data: Any = None) -> "OperationResult":
        return cls(outcome=outcome, data=data, message=message)

    @classmethod
    def not_found(cls, resource: str, identifier: Any = None) -> "OperationResult":
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        return cls(outcome=Outcome.NOT_FOUND, message=message)
