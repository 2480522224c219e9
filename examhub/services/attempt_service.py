"""
examhub/services/attempt_service.py
Attempt State Machine: persistence layer

Start, save, submit, read and expire timed exam attempts.

Design Principles:
1. The deadline rule lives in examhub.state_machines.exam_attempt;
   every path here (read, list, save, submit, sweep) defers to it
2. Lazy expiry: an overdue IN_PROGRESS attempt is expired and scored
   before it is returned, so no caller ever sees a stale "open" attempt
3. Every read-modify-write of answers runs under a row lock plus the
   version column; a stale write is rolled back and retried from a fresh
   read, so a concurrent save and submit never lose answers
4. Result, terminal status, enrollment completion and certificate are
   written in one transaction
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from examhub.config.settings import settings
from examhub.orm.base import utcnow
from examhub.orm.certificate import Certificate
from examhub.orm.enrollment import Enrollment, EnrollmentStatus
from examhub.orm.exam import Exam
from examhub.orm.exam_attempt import ExamAttempt, AttemptStatus
from examhub.orm.exam_result import ExamResult
from examhub.services import certificate_service, enrollment_service, scoring_engine
from examhub.services.outcomes import Outcome, OperationResult
from examhub.state_machines import exam_attempt as sm

logger = logging.getLogger(__name__)

MAX_WRITE_RETRIES = 5


class AttemptConflictError(Exception):
    """Raised when an attempt write keeps losing to concurrent writers."""
    pass


@dataclass
class AttemptView:
    attempt: ExamAttempt
    result: Optional[ExamResult] = None
    certificate: Optional[Certificate] = None

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = self.attempt.to_dict(now=now)
        data["result"] = self.result.to_dict() if self.result else None
        data["certificate_number"] = (
            self.certificate.certificate_number if self.certificate else None
        )
        return data


# ============================================================================
# Loading helpers
# ============================================================================

async def _load_attempt(attempt_id: int, db: AsyncSession, lock: bool = False) -> Optional[ExamAttempt]:
    stmt = select(ExamAttempt).where(ExamAttempt.id == attempt_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _load_exam(exam_id: int, db: AsyncSession) -> Optional[Exam]:
    result = await db.execute(
        select(Exam).where(Exam.id == exam_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _load_result(attempt_id: int, db: AsyncSession) -> Optional[ExamResult]:
    result = await db.execute(select(ExamResult).where(ExamResult.attempt_id == attempt_id))
    return result.scalar_one_or_none()


async def _view(attempt: ExamAttempt, db: AsyncSession) -> AttemptView:
    if attempt.status not in sm.TERMINAL_STATUSES:
        return AttemptView(attempt=attempt)
    return AttemptView(
        attempt=attempt,
        result=await _load_result(attempt.id, db),
        certificate=await certificate_service.get_certificate_for_enrollment(attempt.enrollment_id, db),
    )


def _merge_answers(stored: Optional[Dict[str, Any]], incoming: Optional[Dict[Any, Any]]) -> Dict[str, Any]:
    """Last write wins per question id. Always returns a new dict."""
    merged = dict(stored or {})
    for question_id, answer in (incoming or {}).items():
        merged[str(question_id)] = answer
    return merged


async def _already_submitted(attempt: ExamAttempt, db: AsyncSession) -> OperationResult:
    view = await _view(attempt, db)
    return OperationResult.success(
        view,
        outcome=Outcome.ALREADY_SUBMITTED,
        message=f"Attempt already {attempt.status.value.lower()}",
    )


# ============================================================================
# Scoring transition (shared by submit, lazy expiry and the sweep)
# ============================================================================

async def _finalize(
    attempt: ExamAttempt,
    termination: AttemptStatus,
    now: datetime,
    db: AsyncSession
) -> AttemptView:
    """
    IN_PROGRESS → SUBMITTED|EXPIRED → SCORED, in the caller's transaction.

    Writes the ExamResult, completes the enrollment and issues a
    certificate when the result passes. The caller commits.
    """
    sm.transition(attempt, termination)
    attempt.termination = termination
    if termination == AttemptStatus.SUBMITTED:
        attempt.submitted_at = now
    else:
        attempt.expired_at = now

    exam = await _load_exam(attempt.exam_id, db)
    card = scoring_engine.score(
        attempt.answers,
        exam.questions if exam else [],
        exam.pass_threshold if exam else 100.0,
    )

    result = ExamResult(
        attempt_id=attempt.id,
        raw_score=card.raw_score,
        max_score=card.max_score,
        percentage=card.percentage,
        passed=card.passed,
        breakdown=card.breakdown,
        created_at=now,
    )
    db.add(result)

    sm.transition(attempt, AttemptStatus.SCORED)
    attempt.score = card.percentage

    certificate = None
    enrollment = await enrollment_service.get_enrollment(attempt.enrollment_id, db)
    if enrollment:
        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = now
        if card.passed:
            certificate = await certificate_service.issue_certificate(attempt, enrollment, db, now=now)

    return AttemptView(attempt=attempt, result=result, certificate=certificate)


async def _expire_if_due(
    attempt_id: int,
    db: AsyncSession,
    now: datetime
) -> Tuple[Optional[ExamAttempt], bool]:
    """
    Lazy expiry: expire and score an overdue attempt before it is returned.

    Returns:
        (attempt or None, whether this call expired it)
    """
    grace = settings.SUBMISSION_GRACE_SECONDS

    for _ in range(MAX_WRITE_RETRIES):
        attempt = await _load_attempt(attempt_id, db, lock=True)
        if attempt is None or not sm.is_overdue(attempt, now, grace):
            return attempt, False

        try:
            view = await _finalize(attempt, AttemptStatus.EXPIRED, now, db)
            await db.commit()
        except (StaleDataError, IntegrityError):
            await db.rollback()
            logger.info(f"Attempt {attempt_id} changed during expiry; re-reading")
            continue

        logger.info(
            f"Attempt {attempt_id} expired at {now.isoformat()} "
            f"(deadline {attempt.deadline.isoformat()}), scored {view.result.percentage}%"
        )
        return attempt, True

    raise AttemptConflictError(f"Attempt {attempt_id} could not be expired after {MAX_WRITE_RETRIES} tries")


# ============================================================================
# Public operations
# ============================================================================

async def start_attempt(
    enrollment_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None
) -> OperationResult:
    """
    NOT_STARTED → IN_PROGRESS for a PENDING enrollment.

    deadline = now + exam.duration_minutes. A second start for the same
    enrollment returns ALREADY_STARTED (UNIQUE enrollment_id under races).
    """
    now = now or utcnow()

    enrollment = await enrollment_service.get_enrollment(enrollment_id, db)
    if not enrollment:
        return OperationResult.not_found("Enrollment", enrollment_id)

    existing = await get_attempt_for_enrollment(enrollment_id, db)
    if existing:
        return OperationResult.failure(
            Outcome.ALREADY_STARTED,
            f"Enrollment {enrollment_id} already has attempt {existing.id}",
            data=AttemptView(attempt=existing),
        )

    if enrollment.status != EnrollmentStatus.PENDING:
        return OperationResult.failure(
            Outcome.ENROLLMENT_NOT_PENDING,
            f"Enrollment {enrollment_id} is {enrollment.status.value}",
        )

    exam = await _load_exam(enrollment.exam_id, db)
    if not exam:
        return OperationResult.not_found("Exam", enrollment.exam_id)

    attempt = ExamAttempt(
        enrollment_id=enrollment.id,
        exam_id=enrollment.exam_id,
        student_id=enrollment.student_id,
        status=AttemptStatus.NOT_STARTED,
        answers={},
        created_at=now,
    )
    sm.transition(attempt, AttemptStatus.IN_PROGRESS)
    attempt.started_at = now
    attempt.deadline = sm.compute_deadline(now, exam.duration_minutes)

    enrollment.status = EnrollmentStatus.IN_PROGRESS
    enrollment.started_at = now
    db.add(attempt)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_attempt_for_enrollment(enrollment_id, db)
        if existing is None:
            raise
        logger.info(f"Concurrent start for enrollment {enrollment_id} lost to attempt {existing.id}")
        return OperationResult.failure(
            Outcome.ALREADY_STARTED,
            f"Enrollment {enrollment_id} already has attempt {existing.id}",
            data=AttemptView(attempt=existing),
        )

    await db.refresh(attempt)
    logger.info(
        f"Attempt {attempt.id} started for student {attempt.student_id} "
        f"exam {attempt.exam_id}, deadline {attempt.deadline.isoformat()}"
    )
    return OperationResult.success(AttemptView(attempt=attempt))


async def save_progress(
    attempt_id: int,
    answers: Dict[Any, Any],
    db: AsyncSession,
    now: Optional[datetime] = None,
    student_id: Optional[int] = None,
) -> OperationResult:
    """
    Merge answers into an IN_PROGRESS attempt (last write wins per question).

    Requires now <= deadline. Late saves are refused with DEADLINE_PASSED
    and never merged; once past deadline + grace the attempt is expired.
    """
    now = now or utcnow()
    grace = settings.SUBMISSION_GRACE_SECONDS

    for _ in range(MAX_WRITE_RETRIES):
        attempt = await _load_attempt(attempt_id, db, lock=True)
        if attempt is None or (student_id is not None and attempt.student_id != student_id):
            return OperationResult.not_found("Attempt", attempt_id)

        if attempt.status in sm.TERMINAL_STATUSES:
            return await _already_submitted(attempt, db)

        if sm.is_overdue(attempt, now, grace):
            try:
                view = await _finalize(attempt, AttemptStatus.EXPIRED, now, db)
                await db.commit()
            except (StaleDataError, IntegrityError):
                await db.rollback()
                continue
            logger.info(f"Attempt {attempt_id} expired on late save")
            return OperationResult.failure(
                Outcome.DEADLINE_PASSED, "Attempt deadline has passed", data=view
            )

        if sm.is_past_deadline(attempt, now):
            return OperationResult.failure(
                Outcome.DEADLINE_PASSED,
                "Attempt deadline has passed; progress can no longer be saved",
                data=AttemptView(attempt=attempt),
            )

        attempt.answers = _merge_answers(attempt.answers, answers)
        attempt.last_saved_at = now

        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.info(f"Concurrent write on attempt {attempt_id}; retrying save")
            continue

        logger.debug(f"Attempt {attempt_id} progress saved ({len(answers or {})} answers)")
        return OperationResult.success(AttemptView(attempt=attempt))

    raise AttemptConflictError(f"Attempt {attempt_id} save lost {MAX_WRITE_RETRIES} races")


async def submit_attempt(
    attempt_id: int,
    answers: Optional[Dict[Any, Any]],
    db: AsyncSession,
    now: Optional[datetime] = None,
    student_id: Optional[int] = None,
) -> OperationResult:
    """
    Merge final answers, then IN_PROGRESS → SUBMITTED → SCORED.

    Returns:
        OK with the scored view; ALREADY_SUBMITTED with the existing result
        when the attempt is already terminal (safe client retry);
        DEADLINE_PASSED when now > deadline + grace (the attempt is expired
        and scored from its last saved answers, request answers discarded)
    """
    now = now or utcnow()
    grace = settings.SUBMISSION_GRACE_SECONDS

    for _ in range(MAX_WRITE_RETRIES):
        attempt = await _load_attempt(attempt_id, db, lock=True)
        if attempt is None or (student_id is not None and attempt.student_id != student_id):
            return OperationResult.not_found("Attempt", attempt_id)

        if attempt.status in sm.TERMINAL_STATUSES:
            return await _already_submitted(attempt, db)

        late = sm.is_past_grace(attempt, now, grace)
        try:
            if late:
                view = await _finalize(attempt, AttemptStatus.EXPIRED, now, db)
            else:
                attempt.answers = _merge_answers(attempt.answers, answers)
                attempt.last_saved_at = now
                view = await _finalize(attempt, AttemptStatus.SUBMITTED, now, db)
            await db.commit()
        except (StaleDataError, IntegrityError):
            await db.rollback()
            logger.info(f"Concurrent write on attempt {attempt_id}; retrying submit")
            continue

        if late:
            logger.info(f"Late submit on attempt {attempt_id}; attempt expired instead")
            return OperationResult.failure(
                Outcome.DEADLINE_PASSED,
                "Submission deadline has passed; the attempt was expired and scored",
                data=view,
            )

        logger.info(
            f"Attempt {attempt_id} submitted and scored: {view.result.percentage}% "
            f"(passed={view.result.passed})"
        )
        return OperationResult.success(view)

    raise AttemptConflictError(f"Attempt {attempt_id} submit lost {MAX_WRITE_RETRIES} races")


async def get_attempt(
    attempt_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None,
    student_id: Optional[int] = None,
) -> OperationResult:
    now = now or utcnow()
    attempt, _ = await _expire_if_due(attempt_id, db, now)
    if attempt is None or (student_id is not None and attempt.student_id != student_id):
        return OperationResult.not_found("Attempt", attempt_id)
    return OperationResult.success(await _view(attempt, db))


async def get_attempt_for_enrollment(enrollment_id: int, db: AsyncSession) -> Optional[ExamAttempt]:
    result = await db.execute(
        select(ExamAttempt).where(ExamAttempt.enrollment_id == enrollment_id)
    )
    return result.scalar_one_or_none()


async def get_result(
    attempt_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None,
    student_id: Optional[int] = None,
) -> OperationResult:
    """Scored result of an attempt; NOT_FOUND while it is still running."""
    found = await get_attempt(attempt_id, db, now=now, student_id=student_id)
    if not found.ok:
        return found
    if found.data.result is None:
        return OperationResult.not_found("Result for attempt", attempt_id)
    return found


def _for_academy(stmt, academy_id: int):
    return stmt.join(Enrollment, Enrollment.id == ExamAttempt.enrollment_id).where(
        Enrollment.academy_id == academy_id
    )


async def _overdue_ids(
    db: AsyncSession,
    now: datetime,
    student_id: Optional[int] = None,
    exam_id: Optional[int] = None,
    academy_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[int]:
    cutoff = sm.overdue_cutoff(now, settings.SUBMISSION_GRACE_SECONDS)
    stmt = select(ExamAttempt.id).where(
        ExamAttempt.status == AttemptStatus.IN_PROGRESS,
        ExamAttempt.deadline < cutoff,
    )
    if student_id is not None:
        stmt = stmt.where(ExamAttempt.student_id == student_id)
    if exam_id is not None:
        stmt = stmt.where(ExamAttempt.exam_id == exam_id)
    if academy_id is not None:
        stmt = _for_academy(stmt, academy_id)
    stmt = stmt.order_by(ExamAttempt.deadline.asc())
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_attempts(
    db: AsyncSession,
    student_id: Optional[int] = None,
    exam_id: Optional[int] = None,
    academy_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[ExamAttempt]:
    """Attempts matching the filters, with overdue ones expired first."""
    now = now or utcnow()
    for attempt_id in await _overdue_ids(
        db, now, student_id=student_id, exam_id=exam_id, academy_id=academy_id
    ):
        await _expire_if_due(attempt_id, db, now)

    stmt = select(ExamAttempt)
    if student_id is not None:
        stmt = stmt.where(ExamAttempt.student_id == student_id)
    if exam_id is not None:
        stmt = stmt.where(ExamAttempt.exam_id == exam_id)
    if academy_id is not None:
        stmt = _for_academy(stmt, academy_id)
    result = await db.execute(
        stmt.order_by(ExamAttempt.created_at.desc(), ExamAttempt.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def expire_overdue_attempts(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> int:
    """
    Periodic sweep: run lazy expiry on every overdue IN_PROGRESS attempt.

    Returns:
        Number of attempts this call expired
    """
    now = now or utcnow()
    expired = 0
    for attempt_id in await _overdue_ids(db, now, limit=limit):
        _, did_expire = await _expire_if_due(attempt_id, db, now)
        if did_expire:
            expired += 1
    if expired:
        logger.info(f"Expiry sweep: {expired} attempts expired")
    return expired
