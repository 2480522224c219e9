"""
examhub/services/scoring_engine.py
Scoring Engine: deterministic grading of a finished attempt

Pure function of (answers, questions, pass_threshold): no I/O, no clock,
no randomness. The attempt service persists the ScoreCard it returns.

Comparison rules (one per QuestionType):
- SINGLE_CHOICE / TRUE_FALSE: exact match of the normalised scalar
- MULTI_SELECT: set equality
- FREE_TEXT: exact match after case folding and whitespace collapse
- NUMERIC: |answer - key| <= question.tolerance

A missing, empty or unparseable answer is UNANSWERED and earns zero points.
Scoring never raises on malformed answers.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from examhub.orm.exam import QuestionType


class AnswerStatus(str, Enum):
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    UNANSWERED = "UNANSWERED"


@dataclass(frozen=True)
class ScoreCard:
    raw_score: float
    max_score: float
    percentage: float
    passed: bool
    breakdown: List[Dict[str, Any]] = field(default_factory=list)


def _scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    collapsed = " ".join(value.split()).casefold()
    return collapsed or None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _choice_set(value: Any) -> Optional[frozenset]:
    if not isinstance(value, (list, tuple)):
        return None
    items = [_scalar(item) for item in value]
    if not items or any(item is None for item in items):
        return None
    return frozenset(items)


# Each comparator returns None when the answer is unanswered/unparseable,
# otherwise whether it matches the key.

def _compare_single_choice(answer: Any, key: Any, tolerance: float) -> Optional[bool]:
    given = _scalar(answer)
    if given is None:
        return None
    return given == _scalar(key)


def _compare_true_false(answer: Any, key: Any, tolerance: float) -> Optional[bool]:
    given = _scalar(answer)
    if given is None:
        return None
    expected = _scalar(key)
    return expected is not None and given.casefold() == expected.casefold()


def _compare_multi_select(answer: Any, key: Any, tolerance: float) -> Optional[bool]:
    given = _choice_set(answer)
    if given is None:
        return None
    return given == _choice_set(key)


def _compare_free_text(answer: Any, key: Any, tolerance: float) -> Optional[bool]:
    given = _text(answer)
    if given is None:
        return None
    return given == _text(key)


def _compare_numeric(answer: Any, key: Any, tolerance: float) -> Optional[bool]:
    given = _number(answer)
    if given is None:
        return None
    expected = _number(key)
    if expected is None:
        return False
    return abs(given - expected) <= abs(tolerance or 0.0)


COMPARATORS: Dict[QuestionType, Callable[[Any, Any, float], Optional[bool]]] = {
    QuestionType.SINGLE_CHOICE: _compare_single_choice,
    QuestionType.TRUE_FALSE: _compare_true_false,
    QuestionType.MULTI_SELECT: _compare_multi_select,
    QuestionType.FREE_TEXT: _compare_free_text,
    QuestionType.NUMERIC: _compare_numeric,
}

_uncovered = set(QuestionType) - set(COMPARATORS)
if _uncovered:
    raise RuntimeError(f"Question types without a comparator: {sorted(t.value for t in _uncovered)}")


def grade_answer(question: Any, answer: Any) -> AnswerStatus:
    comparator = COMPARATORS[QuestionType(question.question_type)]
    matched = comparator(answer, question.correct_answer, question.tolerance or 0.0)
    if matched is None:
        return AnswerStatus.UNANSWERED
    return AnswerStatus.CORRECT if matched else AnswerStatus.INCORRECT


def score(
    answers: Optional[Dict[str, Any]],
    questions: Iterable[Any],
    pass_threshold: float
) -> ScoreCard:
    """
    Grade answers against the exam's questions.

    Args:
        answers: {question_id (str or int): answer payload}; anything else
            counts as no answers
        questions: objects with id, question_type, correct_answer, points, tolerance
        pass_threshold: minimum percentage required to pass

    Returns:
        ScoreCard with a per-question breakdown ordered by question id
    """
    if not isinstance(answers, dict):
        answers = {}
    normalized = {str(k): v for k, v in answers.items()}

    raw = 0.0
    maximum = 0.0
    breakdown = []
    for question in sorted(questions, key=lambda q: q.id):
        points = float(question.points or 0)
        status = grade_answer(question, normalized.get(str(question.id)))
        awarded = points if status == AnswerStatus.CORRECT else 0.0

        raw += awarded
        maximum += points
        breakdown.append({
            "question_id": question.id,
            "status": status.value,
            "points_awarded": awarded,
            "points_possible": points,
        })

    percentage = round(raw / maximum * 100, 2) if maximum > 0 else 0.0

    return ScoreCard(
        raw_score=raw,
        max_score=maximum,
        percentage=percentage,
        passed=percentage >= pass_threshold,
        breakdown=breakdown,
    )
