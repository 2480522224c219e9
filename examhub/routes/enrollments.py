"""
examhub/routes/enrollments.py
Enrollment API Routes

- Enroll a student (self-enrollment or academy assignment)
- List enrollments
- Start the timed attempt for an enrollment
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.database import get_db
from examhub.errors import BadRequestError, outcome_to_error, raise_for_outcome
from examhub.orm.base import utcnow
from examhub.rbac import Actor, ActorRole, get_current_actor, require_role
from examhub.schemas.enrollment import EnrollRequest
from examhub.services import attempt_service, enrollment_service
from examhub.services.outcomes import OperationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/enrollments", tags=["enrollments"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def enroll(
    request: EnrollRequest,
    actor: Actor = Depends(require_role([ActorRole.STUDENT, ActorRole.ACADEMY])),
    db: AsyncSession = Depends(get_db)
):
    """
    Enroll a student in a published exam, consuming one purchased seat.

    Students enroll themselves against their own academy's seats.
    Academies assign one of their students (student_id required).
    """
    if actor.academy_id is None:
        raise BadRequestError("Actor is not attached to an academy")

    if actor.is_student:
        student_id, is_assigned = actor.id, False
    else:
        if request.student_id is None:
            raise BadRequestError("student_id is required when assigning a student")
        student_id, is_assigned = request.student_id, True

    result = await enrollment_service.enroll(
        student_id=student_id,
        exam_id=request.exam_id,
        academy_id=actor.academy_id,
        db=db,
        is_assigned=is_assigned,
    )
    raise_for_outcome(result)

    return {"success": True, "enrollment": result.data.to_dict()}


@router.get("")
async def list_enrollments(
    exam_id: Optional[int] = Query(None, description="Filter by exam"),
    student_id: Optional[int] = Query(None, description="Filter by student (academy/admin only)"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    if actor.role == ActorRole.STUDENT:
        student_id, academy_id = actor.id, None
    elif actor.role == ActorRole.ACADEMY:
        academy_id = actor.academy_id
    else:
        academy_id = None

    enrollments = await enrollment_service.list_enrollments(
        db, student_id=student_id, exam_id=exam_id, academy_id=academy_id
    )
    return {
        "success": True,
        "enrollments": [e.to_dict() for e in enrollments],
        "count": len(enrollments),
    }


@router.post("/{enrollment_id}/attempts", status_code=status.HTTP_201_CREATED)
async def start_attempt(
    enrollment_id: int,
    actor: Actor = Depends(require_role([ActorRole.STUDENT])),
    db: AsyncSession = Depends(get_db)
):
    """
    Start the timed attempt for a PENDING enrollment.

    The deadline is fixed at start time: started_at + exam duration.
    """
    enrollment = await enrollment_service.get_enrollment(enrollment_id, db)
    if not enrollment or enrollment.student_id != actor.id:
        raise outcome_to_error(OperationResult.not_found("Enrollment", enrollment_id))

    now = utcnow()
    result = await attempt_service.start_attempt(enrollment_id, db, now=now)
    raise_for_outcome(
        result,
        details={"attempt_id": result.data.attempt.id} if result.data else None,
    )

    return {"success": True, "attempt": result.data.to_dict(now=now)}
