"""
examhub/routes/exam_attempts.py
Timed Exam Attempt API Routes

- Save progress (partial answers, last write wins per question)
- Submit (final answers, synchronous scoring)
- Get attempt / list attempts (overdue attempts are expired first)
- Get result

Submit is safe to retry: a repeat call returns the stored result with
outcome ALREADY_SUBMITTED instead of scoring again.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.database import get_db
from examhub.errors import outcome_to_error, raise_for_outcome
from examhub.orm.base import utcnow
from examhub.rbac import Actor, ActorRole, ensure_academy_scope, get_current_actor, require_role
from examhub.schemas.exam_attempt import SaveProgressRequest, SubmitRequest
from examhub.services import attempt_service, enrollment_service
from examhub.services.outcomes import OperationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exam-attempts", tags=["exam-attempts"])


def _student_scope(actor: Actor) -> Optional[int]:
    return actor.id if actor.is_student else None


async def _ensure_can_view(actor: Actor, result: OperationResult, db: AsyncSession) -> None:
    """Academies may only read attempts of their own enrollments."""
    if actor.role != ActorRole.ACADEMY or not result.ok:
        return
    enrollment = await enrollment_service.get_enrollment(result.data.attempt.enrollment_id, db)
    ensure_academy_scope(actor, enrollment.academy_id if enrollment else None)


def _attempt_response(result: OperationResult, now) -> dict:
    return {
        "success": True,
        "outcome": result.outcome.value,
        "attempt": result.data.to_dict(now=now),
    }


@router.put("/{attempt_id}/save-progress")
async def save_progress(
    attempt_id: int,
    request: SaveProgressRequest,
    actor: Actor = Depends(require_role([ActorRole.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    """
    Merge partial answers into an in-progress attempt.

    Rejected with DEADLINE_PASSED once the deadline has passed; late
    answers are never stored.
    """
    now = utcnow()
    result = await attempt_service.save_progress(
        attempt_id, request.answers, db, now=now, student_id=actor.id
    )
    raise_for_outcome(result)
    return _attempt_response(result, now)


@router.put("/{attempt_id}/submit")
async def submit(
    attempt_id: int,
    request: SubmitRequest,
    actor: Actor = Depends(require_role([ActorRole.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    """
    Submit final answers and score the attempt.

    - OK: scored now
    - ALREADY_SUBMITTED: attempt was already final, stored result returned
    - DEADLINE_PASSED (422): too late, attempt expired and scored from the
      last saved answers
    """
    now = utcnow()
    result = await attempt_service.submit_attempt(
        attempt_id, request.answers, db, now=now, student_id=actor.id
    )
    if not result.ok:
        details = None
        if result.data is not None:
            details = {"attempt": result.data.to_dict(now=now)}
        raise outcome_to_error(result, details)
    return _attempt_response(result, now)


@router.get("")
async def list_attempts(
    exam_id: Optional[int] = Query(None, description="Filter by exam"),
    student_id: Optional[int] = Query(None, description="Filter by student (academy/admin only)"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    now = utcnow()
    academy_id = actor.academy_id if actor.role == ActorRole.ACADEMY else None
    if actor.is_student:
        student_id = actor.id

    attempts = await attempt_service.list_attempts(
        db, student_id=student_id, exam_id=exam_id, academy_id=academy_id, now=now
    )
    return {
        "success": True,
        "attempts": [a.to_dict(now=now) for a in attempts],
        "count": len(attempts),
    }


@router.get("/{attempt_id}")
async def get_attempt(
    attempt_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """
    Current attempt state, with remaining seconds for timer sync.

    An overdue attempt is expired and scored before it is returned.
    """
    now = utcnow()
    result = await attempt_service.get_attempt(
        attempt_id, db, now=now, student_id=_student_scope(actor)
    )
    raise_for_outcome(result)
    await _ensure_can_view(actor, result, db)
    return _attempt_response(result, now)


@router.get("/{attempt_id}/results")
async def get_results(
    attempt_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    now = utcnow()
    result = await attempt_service.get_result(
        attempt_id, db, now=now, student_id=_student_scope(actor)
    )
    raise_for_outcome(result)
    await _ensure_can_view(actor, result, db)

    view = result.data
    return {
        "success": True,
        "attempt_id": view.attempt.id,
        "status": view.attempt.status.value,
        "termination": view.attempt.termination.value if view.attempt.termination else None,
        "result": view.result.to_dict(),
        "certificate": view.certificate.to_dict() if view.certificate else None,
    }
