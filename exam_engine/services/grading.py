"""Auto-grading of objective responses."""

from dataclasses import dataclass
from typing import Any, Optional, Sequence, cast

from pydantic import BaseModel, ValidationError

from exam_engine.exceptions import ValidationFailed
from exam_engine.models import CHOICE_TYPES, SUBJECTIVE_TYPES, Assessment, AttemptResponse, Question, QuestionType
from exam_engine.schemas import ANSWER_MODEL_BY_TYPE, ChoiceAnswer, FillBlanksAnswer, TextAnswer
from exam_engine.utils import sanitize_plain_text


@dataclass
class GradeOutcome:
    """Result of grading one response. ``None`` fields mean "not auto-gradable"."""

    is_correct: Optional[bool] = None
    marks_awarded: Optional[float] = None
    correct_blanks: Optional[int] = None
    total_blanks: Optional[int] = None


def parse_answer(question_type: QuestionType, payload: dict[str, Any]) -> BaseModel:
    """Validate a raw answer payload against the shape its question type expects."""
    model = ANSWER_MODEL_BY_TYPE[question_type]
    try:
        answer = model.model_validate(payload)
    except ValidationError as exc:
        errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
        raise ValidationFailed(
            f"Answer does not match a {question_type.value} question",
            {"errors": errors},
        ) from exc

    if isinstance(answer, TextAnswer):
        answer = TextAnswer(text=sanitize_plain_text(answer.text))
    return answer


def _normalize(text: str) -> str:
    return text.strip().lower()


def grade_choice(
    selected: str,
    correct_key: str,
    max_marks: float,
    negative_marking: bool = False,
    negative_percentage: float = 0,
) -> GradeOutcome:
    if selected == correct_key:
        return GradeOutcome(is_correct=True, marks_awarded=max_marks)
    marks = 0.0
    if negative_marking:
        marks = -(max_marks * negative_percentage / 100)
    return GradeOutcome(is_correct=False, marks_awarded=marks)


def grade_fill_blanks(
    blanks: Sequence[str],
    correct_answers: Sequence[str],
    max_marks: float,
    partial_marking: bool = True,
) -> GradeOutcome:
    """Compare blanks position by position, ignoring case and outer whitespace."""
    total = len(correct_answers)
    correct = 0
    for given, expected in zip(blanks, correct_answers):
        if _normalize(given) == _normalize(str(expected)):
            correct += 1

    all_correct = total > 0 and correct == total
    if partial_marking:
        marks = max_marks * (correct / total) if total else 0.0
    else:
        marks = max_marks if all_correct else 0.0
    return GradeOutcome(is_correct=all_correct, marks_awarded=marks, correct_blanks=correct, total_blanks=total)


def auto_grade(question: Question, answer: BaseModel, max_marks: float, assessment: Assessment) -> GradeOutcome:
    """Grade ``answer`` if its question type is objective.

    Subjective types return an empty outcome and wait for a manual grade.
    """
    qtype = question.type
    if qtype in CHOICE_TYPES:
        return grade_choice(
            cast(ChoiceAnswer, answer).selected_option,
            question.correct_answer,
            max_marks,
            negative_marking=assessment.negative_marking_enabled,
            negative_percentage=assessment.negative_marking_percentage,
        )
    if qtype == QuestionType.FILL_BLANKS:
        return grade_fill_blanks(
            cast(FillBlanksAnswer, answer).blanks,
            question.correct_answer or [],
            max_marks,
            partial_marking=assessment.partial_marking,
        )
    if qtype in SUBJECTIVE_TYPES:
        return GradeOutcome()
    raise ValueError(f"Unhandled question type {qtype!r}")


def display_marks(marks_awarded: Optional[float]) -> float:
    """Per-question marks as stored for display; penalties show as zero."""
    return max(marks_awarded or 0.0, 0.0)


def shown_marks(response: AttemptResponse) -> Optional[float]:
    """Marks to show for one response, or None while it has no grade at all."""
    if response.manual_marks is None and response.marks_awarded is None:
        return None
    return response.final_marks
