"""
Attempt state machine: start, save, submit, lazy expiry and the sweep.

All tests drive the clock explicitly through `now`.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from examhub.orm.certificate import Certificate
from examhub.orm.enrollment import EnrollmentStatus
from examhub.orm.exam_attempt import AttemptStatus, ExamAttempt
from examhub.orm.exam_result import ExamResult
from examhub.services import attempt_service
from examhub.services.enrollment_service import enroll, get_enrollment
from examhub.services.outcomes import Outcome
from examhub.state_machines import exam_attempt as sm
from examhub.tasks.expiry_sweep import run_sweep_once

from conftest import T0, create_exam, fund, question_ids


async def enrolled_student(db, exam, student_id=201, academy_id=1):
    await fund(db, academy_id, exam.id, 1, f"pay_{exam.id}_{student_id}")
    result = await enroll(student_id, exam.id, academy_id, db)
    return result.data


async def started_attempt(db, exam=None, now=T0, **kwargs):
    exam = exam or await create_exam(db, **kwargs)
    enrollment = await enrolled_student(db, exam)
    result = await attempt_service.start_attempt(enrollment.id, db, now=now)
    assert result.outcome == Outcome.OK
    return exam, enrollment, result.data.attempt


async def count(db, model):
    result = await db.execute(select(func.count(model.id)))
    return result.scalar()


class TestTransitionTable:

    def test_allowed_transitions(self):
        assert sm.is_valid_transition(AttemptStatus.NOT_STARTED, AttemptStatus.IN_PROGRESS)
        assert sm.is_valid_transition(AttemptStatus.IN_PROGRESS, AttemptStatus.SUBMITTED)
        assert sm.is_valid_transition(AttemptStatus.IN_PROGRESS, AttemptStatus.EXPIRED)
        assert sm.is_valid_transition(AttemptStatus.SUBMITTED, AttemptStatus.SCORED)
        assert sm.is_valid_transition(AttemptStatus.EXPIRED, AttemptStatus.SCORED)

    def test_scored_is_terminal(self):
        assert sm.ALLOWED_TRANSITIONS[AttemptStatus.SCORED] == []
        attempt = ExamAttempt(status=AttemptStatus.SCORED)
        with pytest.raises(sm.InvalidTransitionError):
            sm.transition(attempt, AttemptStatus.IN_PROGRESS)

    def test_deadline_and_grace(self):
        attempt = ExamAttempt(
            status=AttemptStatus.IN_PROGRESS,
            deadline=sm.compute_deadline(T0, 30),
        )
        deadline = T0 + timedelta(minutes=30)

        assert not sm.is_past_deadline(attempt, deadline)
        assert sm.is_past_deadline(attempt, deadline + timedelta(seconds=1))
        assert not sm.is_past_grace(attempt, deadline + timedelta(seconds=10), 10)
        assert sm.is_past_grace(attempt, deadline + timedelta(seconds=11), 10)
        assert sm.is_overdue(attempt, deadline + timedelta(seconds=11), 10)


class TestStart:

    async def test_start_sets_deadline_from_duration(self, db_session):
        _, enrollment, attempt = await started_attempt(db_session, duration_minutes=45)

        assert attempt.status == AttemptStatus.IN_PROGRESS
        assert attempt.started_at == T0
        assert attempt.deadline == T0 + timedelta(minutes=45)
        assert attempt.answers == {}
        assert attempt.get_remaining_seconds(T0 + timedelta(minutes=5)) == 40 * 60

        enrollment = await get_enrollment(enrollment.id, db_session)
        assert enrollment.status == EnrollmentStatus.IN_PROGRESS
        assert enrollment.started_at == T0

    async def test_second_start_is_already_started(self, db_session):
        _, enrollment, attempt = await started_attempt(db_session)

        again = await attempt_service.start_attempt(enrollment.id, db_session, now=T0)

        assert again.outcome == Outcome.ALREADY_STARTED
        assert again.data.attempt.id == attempt.id
        assert await count(db_session, ExamAttempt) == 1

    async def test_unknown_enrollment(self, db_session):
        result = await attempt_service.start_attempt(12345, db_session, now=T0)
        assert result.outcome == Outcome.NOT_FOUND

    async def test_enrollment_must_be_pending(self, db_session):
        exam = await create_exam(db_session)
        enrollment = await enrolled_student(db_session, exam)
        enrollment.status = EnrollmentStatus.COMPLETED
        await db_session.commit()

        result = await attempt_service.start_attempt(enrollment.id, db_session, now=T0)
        assert result.outcome == Outcome.ENROLLMENT_NOT_PENDING

    async def test_concurrent_starts_create_one_attempt(self, file_session_factory):
        async with file_session_factory() as db:
            exam = await create_exam(db)
            enrollment = await enrolled_student(db, exam)

        async def start():
            async with file_session_factory() as db:
                return (await attempt_service.start_attempt(enrollment.id, db, now=T0)).outcome

        outcomes = await asyncio.gather(*[start() for _ in range(3)])

        assert outcomes.count(Outcome.OK) == 1
        assert outcomes.count(Outcome.ALREADY_STARTED) == 2


class TestSaveProgress:

    async def test_last_write_wins_per_question(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        q1, q2, _ = question_ids(exam)

        await attempt_service.save_progress(attempt.id, {q1: "a", q2: False}, db_session, now=T0 + timedelta(minutes=1))
        result = await attempt_service.save_progress(attempt.id, {q1: "b"}, db_session, now=T0 + timedelta(minutes=2))

        assert result.outcome == Outcome.OK
        assert result.data.attempt.answers == {q1: "b", q2: False}
        assert result.data.attempt.last_saved_at == T0 + timedelta(minutes=2)

    async def test_save_at_exact_deadline_is_accepted(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        q1 = question_ids(exam)[0]

        result = await attempt_service.save_progress(
            attempt.id, {q1: "b"}, db_session, now=attempt.deadline
        )
        assert result.outcome == Outcome.OK

    async def test_save_within_grace_is_refused_but_attempt_stays_open(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        q1 = question_ids(exam)[0]

        result = await attempt_service.save_progress(
            attempt.id, {q1: "b"}, db_session, now=attempt.deadline + timedelta(seconds=5)
        )

        assert result.outcome == Outcome.DEADLINE_PASSED
        reread = await attempt_service.get_attempt(attempt.id, db_session, now=attempt.deadline + timedelta(seconds=5))
        assert reread.data.attempt.status == AttemptStatus.IN_PROGRESS
        assert reread.data.attempt.answers == {}

    async def test_save_on_scored_attempt(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        await attempt_service.submit_attempt(attempt.id, {}, db_session, now=T0 + timedelta(minutes=3))

        result = await attempt_service.save_progress(
            attempt.id, {question_ids(exam)[0]: "b"}, db_session, now=T0 + timedelta(minutes=4)
        )

        assert result.outcome == Outcome.ALREADY_SUBMITTED
        assert result.data.attempt.answers == {}

    async def test_other_student_cannot_save(self, db_session):
        exam, _, attempt = await started_attempt(db_session)

        result = await attempt_service.save_progress(
            attempt.id, {}, db_session, now=T0, student_id=999
        )
        assert result.outcome == Outcome.NOT_FOUND


class TestThirtyMinuteExam:

    async def test_save_late_save_and_read_expire(self, db_session):
        exam, enrollment, attempt = await started_attempt(db_session, duration_minutes=30)
        q1, q2, q3 = question_ids(exam)

        saved = await attempt_service.save_progress(
            attempt.id, {q1: "b", q2: True}, db_session, now=T0 + timedelta(minutes=10)
        )
        assert saved.outcome == Outcome.OK

        late = await attempt_service.save_progress(
            attempt.id, {q3: ["a", "c"]}, db_session, now=T0 + timedelta(minutes=31)
        )
        assert late.outcome == Outcome.DEADLINE_PASSED

        read = await attempt_service.get_attempt(attempt.id, db_session, now=T0 + timedelta(minutes=31))
        view = read.data

        assert view.attempt.status == AttemptStatus.SCORED
        assert view.attempt.termination == AttemptStatus.EXPIRED
        assert view.attempt.answers == {q1: "b", q2: True}
        assert view.result.raw_score == 2
        assert view.result.max_score == 3
        assert view.result.percentage == 66.67

        enrollment = await get_enrollment(enrollment.id, db_session)
        assert enrollment.status == EnrollmentStatus.COMPLETED

    async def test_read_without_late_save_expires_from_saved_answers(self, db_session):
        exam, _, attempt = await started_attempt(db_session, duration_minutes=30)
        q1 = question_ids(exam)[0]
        await attempt_service.save_progress(attempt.id, {q1: "b"}, db_session, now=T0 + timedelta(minutes=10))

        read = await attempt_service.get_attempt(attempt.id, db_session, now=T0 + timedelta(minutes=31))

        assert read.data.attempt.termination == AttemptStatus.EXPIRED
        assert read.data.attempt.expired_at == T0 + timedelta(minutes=31)
        assert read.data.result.raw_score == 1
        assert await count(db_session, ExamResult) == 1


class TestSubmit:

    async def test_submit_merges_then_scores(self, db_session):
        exam, enrollment, attempt = await started_attempt(db_session, pass_threshold=60)
        q1, q2, q3 = question_ids(exam)
        await attempt_service.save_progress(attempt.id, {q1: "b", q2: False}, db_session, now=T0 + timedelta(minutes=5))

        result = await attempt_service.submit_attempt(
            attempt.id, {q2: True, q3: ["c", "a"]}, db_session, now=T0 + timedelta(minutes=20)
        )

        view = result.data
        assert result.outcome == Outcome.OK
        assert view.attempt.status == AttemptStatus.SCORED
        assert view.attempt.termination == AttemptStatus.SUBMITTED
        assert view.attempt.submitted_at == T0 + timedelta(minutes=20)
        assert view.attempt.answers == {q1: "b", q2: True, q3: ["c", "a"]}
        assert view.result.percentage == 100.0
        assert view.result.passed is True
        assert view.attempt.score == 100.0

        enrollment = await get_enrollment(enrollment.id, db_session)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.completed_at == T0 + timedelta(minutes=20)

    async def test_submit_within_grace_is_accepted(self, db_session):
        _, _, attempt = await started_attempt(db_session)

        result = await attempt_service.submit_attempt(
            attempt.id, {}, db_session, now=attempt.deadline + timedelta(seconds=10)
        )
        assert result.outcome == Outcome.OK
        assert result.data.attempt.termination == AttemptStatus.SUBMITTED

    async def test_double_submit_returns_same_result(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        answers = {question_ids(exam)[0]: "b"}

        first = await attempt_service.submit_attempt(attempt.id, answers, db_session, now=T0 + timedelta(minutes=5))
        second = await attempt_service.submit_attempt(attempt.id, answers, db_session, now=T0 + timedelta(minutes=5, seconds=2))

        assert first.outcome == Outcome.OK
        assert second.outcome == Outcome.ALREADY_SUBMITTED
        assert second.ok
        assert second.data.result.id == first.data.result.id
        assert second.data.result.to_dict() == first.data.result.to_dict()
        assert await count(db_session, ExamResult) == 1

    async def test_late_submit_expires_and_discards_request_answers(self, db_session):
        exam, _, attempt = await started_attempt(db_session)
        q1, q2, _ = question_ids(exam)
        await attempt_service.save_progress(attempt.id, {q1: "b"}, db_session, now=T0 + timedelta(minutes=10))

        late = await attempt_service.submit_attempt(
            attempt.id, {q2: True}, db_session, now=attempt.deadline + timedelta(seconds=11)
        )

        assert late.outcome == Outcome.DEADLINE_PASSED
        assert late.data.attempt.termination == AttemptStatus.EXPIRED
        assert late.data.attempt.answers == {q1: "b"}
        assert late.data.result.raw_score == 1

        repeat = await attempt_service.submit_attempt(
            attempt.id, {q2: True}, db_session, now=attempt.deadline + timedelta(minutes=1)
        )
        assert repeat.outcome == Outcome.ALREADY_SUBMITTED
        assert repeat.data.result.id == late.data.result.id

    async def test_submit_after_lazy_expiry_returns_existing_result(self, db_session):
        _, _, attempt = await started_attempt(db_session)
        later = attempt.deadline + timedelta(minutes=5)
        await attempt_service.get_attempt(attempt.id, db_session, now=later)

        result = await attempt_service.submit_attempt(attempt.id, {}, db_session, now=later)

        assert result.outcome == Outcome.ALREADY_SUBMITTED
        assert result.data.attempt.termination == AttemptStatus.EXPIRED

    async def test_unknown_attempt(self, db_session):
        result = await attempt_service.submit_attempt(999, {}, db_session, now=T0)
        assert result.outcome == Outcome.NOT_FOUND

    async def test_concurrent_save_and_submit_lose_no_answers(self, file_session_factory):
        async with file_session_factory() as db:
            exam, _, attempt = await started_attempt(db)
        q1, q2, _ = question_ids(exam)
        now = T0 + timedelta(minutes=5)

        async def save():
            async with file_session_factory() as db:
                return await attempt_service.save_progress(attempt.id, {q1: "b"}, db, now=now)

        async def submit():
            async with file_session_factory() as db:
                return await attempt_service.submit_attempt(attempt.id, {q2: True}, db, now=now)

        saved, submitted = await asyncio.gather(save(), submit())

        assert submitted.outcome == Outcome.OK
        async with file_session_factory() as db:
            final = (await attempt_service.get_attempt(attempt.id, db, now=now)).data
        assert final.attempt.answers[q2] is True
        if saved.outcome == Outcome.OK:
            assert final.attempt.answers[q1] == "b"
        else:
            assert saved.outcome == Outcome.ALREADY_SUBMITTED


class TestResultsAndCertificates:

    async def test_result_not_available_while_running(self, db_session):
        _, _, attempt = await started_attempt(db_session)

        result = await attempt_service.get_result(attempt.id, db_session, now=T0 + timedelta(minutes=1))
        assert result.outcome == Outcome.NOT_FOUND

    async def test_result_read_applies_lazy_expiry(self, db_session):
        _, _, attempt = await started_attempt(db_session)

        result = await attempt_service.get_result(
            attempt.id, db_session, now=attempt.deadline + timedelta(minutes=1)
        )

        assert result.ok
        assert result.data.result.passed is False

    async def test_passing_issues_one_certificate(self, db_session):
        exam, enrollment, attempt = await started_attempt(db_session, pass_threshold=50)
        q1, q2, q3 = question_ids(exam)

        submitted = await attempt_service.submit_attempt(
            attempt.id, {q1: "b", q2: True, q3: ["a", "c"]}, db_session, now=T0 + timedelta(minutes=3)
        )
        await attempt_service.submit_attempt(attempt.id, {}, db_session, now=T0 + timedelta(minutes=4))

        certificate = submitted.data.certificate
        assert certificate is not None
        assert certificate.enrollment_id == enrollment.id
        assert certificate.academy_id == 1
        assert certificate.certificate_number.startswith(f"EP-{T0.year}-")
        assert len(certificate.certificate_number.split("-")[-1]) == 8
        assert await count(db_session, Certificate) == 1

        again = await attempt_service.get_result(attempt.id, db_session, now=T0 + timedelta(minutes=5))
        assert again.data.certificate.certificate_number == certificate.certificate_number

    async def test_failing_issues_no_certificate(self, db_session):
        _, _, attempt = await started_attempt(db_session, pass_threshold=50)

        submitted = await attempt_service.submit_attempt(attempt.id, {}, db_session, now=T0 + timedelta(minutes=3))

        assert submitted.data.certificate is None
        assert await count(db_session, Certificate) == 0


class TestListingAndSweep:

    async def test_list_expires_overdue_attempts(self, db_session):
        exam = await create_exam(db_session, duration_minutes=30)
        _, _, overdue = await started_attempt(db_session, exam=exam, now=T0)
        second = await enrolled_student(db_session, exam, student_id=202)
        running = (await attempt_service.start_attempt(second.id, db_session, now=T0 + timedelta(minutes=20))).data.attempt

        attempts = await attempt_service.list_attempts(
            db_session, exam_id=exam.id, now=T0 + timedelta(minutes=31)
        )
        by_id = {a.id: a for a in attempts}

        assert by_id[overdue.id].status == AttemptStatus.SCORED
        assert by_id[overdue.id].termination == AttemptStatus.EXPIRED
        assert by_id[running.id].status == AttemptStatus.IN_PROGRESS

    async def test_list_filters_by_academy(self, db_session):
        exam = await create_exam(db_session)
        await started_attempt(db_session, exam=exam)

        assert len(await attempt_service.list_attempts(db_session, academy_id=1, now=T0)) == 1
        assert await attempt_service.list_attempts(db_session, academy_id=2, now=T0) == []

    async def test_sweep_uses_the_same_deadline_rule(self, db_session):
        _, _, attempt = await started_attempt(db_session, duration_minutes=30)

        within_grace = attempt.deadline + timedelta(seconds=10)
        assert await attempt_service.expire_overdue_attempts(db_session, now=within_grace) == 0

        past_grace = attempt.deadline + timedelta(seconds=11)
        assert await attempt_service.expire_overdue_attempts(db_session, now=past_grace) == 1
        assert await attempt_service.expire_overdue_attempts(db_session, now=past_grace) == 0

        view = (await attempt_service.get_attempt(attempt.id, db_session, now=past_grace)).data
        assert view.attempt.termination == AttemptStatus.EXPIRED
        assert await count(db_session, ExamResult) == 1

    async def test_run_sweep_once_uses_its_own_session(self, session_factory):
        async with session_factory() as db:
            _, _, attempt = await started_attempt(db)

        expired = await run_sweep_once(session_factory, now=attempt.deadline + timedelta(minutes=1))

        assert expired == 1
        async with session_factory() as db:
            view = (await attempt_service.get_attempt(attempt.id, db, now=attempt.deadline)).data
        assert view.attempt.status == AttemptStatus.SCORED

    async def test_expiry_scores_non_mapping_answers_as_unanswered(self, db_session):
        _, _, attempt = await started_attempt(db_session)
        attempt.answers = ["b"]
        await db_session.commit()

        view = (await attempt_service.get_attempt(
            attempt.id, db_session, now=attempt.deadline + timedelta(minutes=1)
        )).data

        assert view.attempt.termination == AttemptStatus.EXPIRED
        assert view.result.raw_score == 0
        assert all(row["status"] == "UNANSWERED" for row in view.result.breakdown)
