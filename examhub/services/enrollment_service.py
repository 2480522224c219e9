"""
examhub/services/enrollment_service.py
Enrollment Manager

Consumes one ledger seat to register a student for an exam.

Seat ownership:
Seats are bought by academies, so the seat is debited from the student's
academy. The academy id comes from the session collaborator (the student's
own claims, or the academy assigning the student).

Atomicity:
The seat debit and the enrollment insert share one transaction. If the
insert fails after a successful debit, the rollback restores the seat.
A partial unique index allows one active enrollment per (student, exam);
the loser of a concurrent enroll gets ALREADY_ENROLLED and its debit is
rolled back.
"""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.orm.base import utcnow
from examhub.orm.enrollment import Enrollment, EnrollmentStatus, ACTIVE_ENROLLMENT_STATUSES
from examhub.orm.exam import Exam, ExamStatus
from examhub.services import entitlement_ledger_service as ledger
from examhub.services.outcomes import Outcome, OperationResult

logger = logging.getLogger(__name__)


async def get_active_enrollment(
    student_id: int,
    exam_id: int,
    db: AsyncSession
) -> Optional[Enrollment]:
    result = await db.execute(
        select(Enrollment).where(
            Enrollment.student_id == student_id,
            Enrollment.exam_id == exam_id,
            Enrollment.status.in_(ACTIVE_ENROLLMENT_STATUSES),
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def enroll(
    student_id: int,
    exam_id: int,
    academy_id: int,
    db: AsyncSession,
    is_assigned: bool = False,
) -> OperationResult:
    """
    Enroll a student, consuming one seat from the academy's ledger.

    Order of checks:
    1. Exam exists and is published
    2. No non-terminal enrollment for (student, exam) → else ALREADY_ENROLLED
    3. Ledger debit → else INSUFFICIENT_SEATS
    4. Insert PENDING enrollment, commit debit + insert together
    """
    result = await db.execute(select(Exam).where(Exam.id == exam_id))
    exam = result.scalar_one_or_none()
    if not exam:
        return OperationResult.not_found("Exam", exam_id)

    if exam.status != ExamStatus.PUBLISHED:
        return OperationResult.failure(
            Outcome.EXAM_NOT_PUBLISHED, "Cannot enroll in an unpublished exam"
        )

    existing = await get_active_enrollment(student_id, exam_id, db)
    if existing:
        return OperationResult.failure(
            Outcome.ALREADY_ENROLLED,
            f"Student {student_id} is already enrolled in exam {exam_id}",
            data=existing,
        )

    debited = await ledger.debit(academy_id=academy_id, exam_id=exam_id, db=db)
    if not debited.ok:
        await db.rollback()
        return debited

    enrollment = Enrollment(
        student_id=student_id,
        exam_id=exam_id,
        academy_id=academy_id,
        status=EnrollmentStatus.PENDING,
        is_assigned=is_assigned,
        created_at=utcnow(),
    )
    db.add(enrollment)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        winner = await get_active_enrollment(student_id, exam_id, db)
        if winner is None:
            logger.error(
                f"Enrollment insert failed for student {student_id} exam {exam_id}; "
                f"seat debit rolled back"
            )
            raise
        logger.info(
            f"Concurrent enrollment for student {student_id} exam {exam_id} lost to "
            f"enrollment {winner.id}; seat debit rolled back"
        )
        return OperationResult.failure(
            Outcome.ALREADY_ENROLLED,
            f"Student {student_id} is already enrolled in exam {exam_id}",
            data=winner,
        )
    except DBAPIError:
        await db.rollback()
        logger.error(
            f"Enrollment insert failed for student {student_id} exam {exam_id}; "
            f"seat debit rolled back"
        )
        raise

    await db.refresh(enrollment)
    logger.info(
        f"Enrolled student {student_id} in exam {exam_id} "
        f"(enrollment {enrollment.id}, academy {academy_id})"
    )
    return OperationResult.success(enrollment)


async def get_enrollment(enrollment_id: int, db: AsyncSession) -> Optional[Enrollment]:
    result = await db.execute(select(Enrollment).where(Enrollment.id == enrollment_id))
    return result.scalar_one_or_none()


async def list_enrollments(
    db: AsyncSession,
    student_id: Optional[int] = None,
    exam_id: Optional[int] = None,
    academy_id: Optional[int] = None,
) -> List[Enrollment]:
    stmt = select(Enrollment)
    if student_id is not None:
        stmt = stmt.where(Enrollment.student_id == student_id)
    if exam_id is not None:
        stmt = stmt.where(Enrollment.exam_id == exam_id)
    if academy_id is not None:
        stmt = stmt.where(Enrollment.academy_id == academy_id)
    result = await db.execute(stmt.order_by(Enrollment.created_at.desc(), Enrollment.id.desc()))
    return list(result.scalars().all())
