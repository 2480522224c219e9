"""
Exam Attempt State Machine
Transition table and the single deadline rule for timed attempts.

States:
    NOT_STARTED → IN_PROGRESS → SUBMITTED → SCORED
                              ↘ EXPIRED   ↗

Deadline rule:
- save is accepted while now <= deadline
- submit is accepted while now <= deadline + grace
- an IN_PROGRESS attempt with now > deadline + grace is overdue and expires
  on the next read (HTTP read, listing, save, submit or the periodic sweep)
"""
from datetime import datetime, timedelta
from typing import Dict, List

from examhub.orm.exam_attempt import AttemptStatus, ExamAttempt


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


# Valid state transitions: {current_state: [allowed_next_states]}
ALLOWED_TRANSITIONS: Dict[AttemptStatus, List[AttemptStatus]] = {
    AttemptStatus.NOT_STARTED: [
        AttemptStatus.IN_PROGRESS
    ],
    AttemptStatus.IN_PROGRESS: [
        AttemptStatus.SUBMITTED,
        AttemptStatus.EXPIRED
    ],
    AttemptStatus.SUBMITTED: [
        AttemptStatus.SCORED
    ],
    AttemptStatus.EXPIRED: [
        AttemptStatus.SCORED
    ],
    AttemptStatus.SCORED: []
}

TERMINAL_STATUSES = frozenset({
    AttemptStatus.SUBMITTED,
    AttemptStatus.EXPIRED,
    AttemptStatus.SCORED,
})


def is_valid_transition(from_state: AttemptStatus, to_state: AttemptStatus) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, [])


def transition(attempt: ExamAttempt, new_state: AttemptStatus) -> None:
    """
    Move an attempt to new_state in memory; the caller persists it.

    Raises:
        InvalidTransitionError: If the table does not allow the move
    """
    if not is_valid_transition(attempt.status, new_state):
        raise InvalidTransitionError(
            f"Cannot transition attempt {attempt.id} from {attempt.status.value} to {new_state.value}. "
            f"Allowed: {[s.value for s in ALLOWED_TRANSITIONS.get(attempt.status, [])]}"
        )
    attempt.status = new_state


def compute_deadline(started_at: datetime, duration_minutes: int) -> datetime:
    return started_at + timedelta(minutes=duration_minutes)


def is_past_deadline(attempt: ExamAttempt, now: datetime) -> bool:
    """True once the nominal deadline has passed (saves are refused)."""
    return attempt.deadline is not None and now > attempt.deadline


def is_past_grace(attempt: ExamAttempt, now: datetime, grace_seconds: int) -> bool:
    """True once deadline + grace has passed (submits are refused)."""
    if attempt.deadline is None:
        return False
    return now > attempt.deadline + timedelta(seconds=grace_seconds)


def is_overdue(attempt: ExamAttempt, now: datetime, grace_seconds: int) -> bool:
    """An IN_PROGRESS attempt that must expire before it is returned."""
    return attempt.status == AttemptStatus.IN_PROGRESS and is_past_grace(attempt, now, grace_seconds)


def overdue_cutoff(now: datetime, grace_seconds: int) -> datetime:
    """Attempts with deadline < cutoff are overdue (for bulk queries)."""
    return now - timedelta(seconds=grace_seconds)
