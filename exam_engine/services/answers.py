"""Saving answers into a live attempt, with immediate auto-grading."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlmodel import Session

from exam_engine.exceptions import AttemptExpired, NotActive, ValidationFailed
from exam_engine.models import CHOICE_TYPES, TERMINAL_STATUSES, Assessment, AttemptStatus, Question, SubmissionMethod
from exam_engine.schemas import SaveAnswerIn
from exam_engine.services import grading, sessions, timing
from exam_engine.utils import utcnow

logger = logging.getLogger(__name__)


def save_answer(
    session: Session,
    attempt_id: int,
    student_id: int,
    payload: SaveAnswerIn,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Store the student's answer to one question and grade it if objective.

    Answers are accepted while the attempt is started, in progress or paused.
    The answer replaces any earlier one; time spent accumulates.

    Raises:
        AttemptExpired: If the deadline has passed (the attempt is
            auto-submitted as a side effect and stays submitted)
        NotActive: If the attempt was already submitted
        NotFound: If the question is not part of the attempt
        ValidationFailed: If the answer does not fit the question type
    """
    now = now or utcnow()
    attempt = sessions.get_owned_attempt(session, attempt_id, student_id)
    assessment = session.get(Assessment, attempt.assessment_id)

    if attempt.status in TERMINAL_STATUSES:
        if attempt.submission_method == SubmissionMethod.TIME_EXPIRED:
            raise AttemptExpired("Time has expired for this attempt", {"status": attempt.status.value})
        raise NotActive("Attempt is no longer active", {"status": attempt.status.value})

    if timing.enforce_expiry(session, attempt, assessment, now):
        logger.warning("Answer for attempt %s arrived after the deadline", attempt.id)
        raise AttemptExpired("Time has expired for this attempt", {"status": attempt.status.value})

    response = sessions.get_response(session, attempt.id, payload.question_id)
    question = session.get(Question, response.question_id)
    answer = grading.parse_answer(response.question_type, payload.answer)

    if response.question_type in CHOICE_TYPES and answer.selected_option not in response.option_order:
        raise ValidationFailed("Selected option is not one of the question's options", {"options": response.option_order})

    outcome = grading.auto_grade(question, answer, response.max_marks, assessment)

    response.answer = answer.model_dump()
    response.time_spent_seconds += payload.time_spent_seconds
    response.is_answered = True
    response.is_marked_for_review = payload.is_marked_for_review
    response.saved_at = now
    response.is_correct = outcome.is_correct
    response.marks_awarded = outcome.marks_awarded
    if response.manual_marks is None:
        response.final_marks = grading.display_marks(outcome.marks_awarded)
    session.add(response)

    if attempt.status == AttemptStatus.STARTED:
        attempt.status = AttemptStatus.IN_PROGRESS
    attempt.updated_at = now
    session.add(attempt)
    session.commit()
    session.refresh(response)
    session.refresh(attempt)

    logger.debug(
        "Saved answer for question %s on attempt %s (correct=%s, marks=%s)",
        response.question_id,
        attempt.id,
        outcome.is_correct,
        outcome.marks_awarded,
    )
    return {
        "attempt_id": attempt.id,
        "question_id": response.question_id,
        "status": attempt.status.value,
        "time_remaining": attempt.time_remaining,
        "is_answered": response.is_answered,
        "is_marked_for_review": response.is_marked_for_review,
        "time_spent_seconds": response.time_spent_seconds,
        "saved_at": response.saved_at,
        "auto_grading": {
            "is_correct": outcome.is_correct,
            "marks_awarded": grading.shown_marks(response),
            "correct_blanks": outcome.correct_blanks,
            "total_blanks": outcome.total_blanks,
        },
    }
