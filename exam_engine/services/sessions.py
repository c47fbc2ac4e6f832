"""Attempt lifecycle: eligibility, start or resume, pause, and the student view."""

import logging
import random
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from exam_engine.exceptions import (
    AttemptCooldown,
    AttemptsExhausted,
    InvalidState,
    NotAuthorized,
    NotFound,
    NotYetOpen,
    WindowClosed,
)
from exam_engine.models import (
    CHOICE_TYPES,
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Assessment,
    Attempt,
    AttemptResponse,
    AttemptStatus,
    Question,
)
from exam_engine.services import catalog, grading, timing
from exam_engine.utils import utcnow

logger = logging.getLogger(__name__)


# ===================== LOOKUPS =====================


def get_owned_attempt(session: Session, attempt_id: int, student_id: int) -> Attempt:
    attempt = session.get(Attempt, attempt_id)
    if not attempt:
        raise NotFound(f"Attempt {attempt_id} not found")
    if attempt.student_id != student_id:
        raise NotAuthorized("This attempt belongs to another student")
    return attempt


def list_attempts(session: Session, assessment_id: int, student_id: int) -> List[Attempt]:
    stmt = (
        select(Attempt)
        .where(Attempt.assessment_id == assessment_id, Attempt.student_id == student_id)
        .order_by(Attempt.attempt_number)
    )
    return session.exec(stmt).all()


def find_live_attempt(session: Session, assessment_id: int, student_id: int) -> Optional[Attempt]:
    stmt = select(Attempt).where(
        Attempt.assessment_id == assessment_id,
        Attempt.student_id == student_id,
        Attempt.live == True,  # noqa: E712
    )
    return session.exec(stmt).first()


def list_responses(session: Session, attempt_id: int) -> List[AttemptResponse]:
    stmt = select(AttemptResponse).where(AttemptResponse.attempt_id == attempt_id).order_by(AttemptResponse.position)
    return session.exec(stmt).all()


def get_response(session: Session, attempt_id: int, question_id: int) -> AttemptResponse:
    stmt = select(AttemptResponse).where(
        AttemptResponse.attempt_id == attempt_id,
        AttemptResponse.question_id == question_id,
    )
    response = session.exec(stmt).first()
    if not response:
        raise NotFound(f"Question {question_id} is not part of attempt {attempt_id}")
    return response


# ===================== START / RESUME =====================


MOBILE_AGENT_MARKERS = ("mobile", "android", "iphone", "ipad")


def submission_source(user_agent: Optional[str]) -> str:
    agent = (user_agent or "").lower()
    return "mobile" if any(marker in agent for marker in MOBILE_AGENT_MARKERS) else "web"


def _build_snapshot(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    rng: random.Random,
) -> None:
    slots = list(catalog.list_assessment_questions(session, assessment.id))
    if assessment.shuffle_questions:
        rng.shuffle(slots)

    for position, slot in enumerate(slots, start=1):
        question = session.get(Question, slot.question_id)
        option_order = [option["key"] for option in question.options]
        if assessment.shuffle_options and question.type in CHOICE_TYPES:
            rng.shuffle(option_order)
        session.add(
            AttemptResponse(
                attempt_id=attempt.id,
                question_id=question.id,
                position=position,
                question_type=question.type,
                max_marks=slot.marks,
                option_order=option_order,
                time_limit_minutes=slot.time_limit_minutes,
                is_optional=slot.is_optional,
            )
        )


def start_attempt(
    session: Session,
    assessment_id: int,
    student_id: int,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[Attempt, bool]:
    """Start a new attempt, or hand back the one already in progress.

    Eligibility is checked in a fixed order and the first failure wins:
    schedule window, participation, attempt quota. A live attempt whose
    deadline has passed is auto-submitted first and then counts against
    the quota like any finished attempt.

    Returns:
        Tuple of (attempt, created), ``created`` False when resuming

    Raises:
        NotFound: If the assessment does not exist or is not open
        NotYetOpen / WindowClosed: Outside the schedule window
        NotAuthorized: If the student is not a participant
        AttemptsExhausted: If every allowed attempt has been used
        AttemptCooldown: If the delay between attempts has not elapsed
    """
    now = now or utcnow()
    rng = rng or random.Random()
    assessment = catalog.get_open_assessment(session, assessment_id)

    if now < assessment.start_time:
        raise NotYetOpen("Assessment has not started yet", {"start_time": assessment.start_time})
    if now > assessment.end_time:
        raise WindowClosed("Assessment has ended", {"end_time": assessment.end_time})
    if not catalog.is_participant(session, assessment, student_id):
        raise NotAuthorized("You are not a participant of this assessment")

    live = find_live_attempt(session, assessment.id, student_id)
    if live and timing.enforce_expiry(session, live, assessment, now):
        live = None

    attempts = list_attempts(session, assessment.id, student_id)
    finished = [a for a in attempts if a.status in TERMINAL_STATUSES]
    if len(finished) >= assessment.max_attempts:
        raise AttemptsExhausted(
            "Maximum attempts reached",
            {"max_attempts": assessment.max_attempts, "attempts_used": len(finished)},
        )

    if live:
        session.commit()
        session.refresh(live)
        logger.info("Resuming attempt %s for student %s", live.id, student_id)
        return live, False

    if finished and assessment.attempt_delay_minutes:
        last_submitted = max(a.submitted_at or a.started_at for a in finished)
        available_at = last_submitted + timedelta(minutes=assessment.attempt_delay_minutes)
        if now < available_at:
            raise AttemptCooldown("Please wait before starting another attempt", {"available_at": available_at})

    attempt_number = max((a.attempt_number for a in attempts), default=0) + 1
    attempt = Attempt(
        assessment_id=assessment.id,
        student_id=student_id,
        attempt_number=attempt_number,
        status=AttemptStatus.STARTED,
        live=True,
        started_at=now,
        total_marks=assessment.total_marks,
        client_ip=client_ip,
        user_agent=user_agent,
        submission_source=submission_source(user_agent),
        updated_at=now,
    )
    attempt.time_remaining = timing.minutes_remaining(attempt, assessment, now)
    session.add(attempt)
    try:
        session.flush()
    except IntegrityError:
        # Another request created the live attempt first
        session.rollback()
        live = find_live_attempt(session, assessment.id, student_id)
        if live is None:
            raise InvalidState("Attempt could not be started, please retry")
        logger.info("Concurrent start for student %s resolved to attempt %s", student_id, live.id)
        return live, False

    _build_snapshot(session, attempt, assessment, rng)
    session.exec(
        update(Assessment)
        .where(Assessment.id == assessment.id)
        .values(total_started=Assessment.total_started + 1)
        .execution_options(synchronize_session=False)
    )
    catalog.mark_participant_started(session, assessment.id, student_id, now)
    session.commit()
    session.refresh(attempt)
    session.refresh(assessment)

    logger.info(
        "Student %s started attempt %s (#%d) of assessment %s",
        student_id,
        attempt.id,
        attempt.attempt_number,
        assessment.id,
    )
    return attempt, True


def get_current_attempt(
    session: Session,
    assessment_id: int,
    student_id: int,
    now: Optional[datetime] = None,
) -> Attempt:
    """The live attempt, or the most recent one if none is live.

    Reading the attempt is enough to trigger auto-submission of an overdue one.
    """
    now = now or utcnow()
    catalog.get_assessment(session, assessment_id)
    attempt = find_live_attempt(session, assessment_id, student_id)
    if attempt is None:
        attempts = list_attempts(session, assessment_id, student_id)
        if not attempts:
            raise NotFound("No attempt found for this assessment")
        return attempts[-1]

    assessment = session.get(Assessment, attempt.assessment_id)
    timing.enforce_expiry(session, attempt, assessment, now)
    session.commit()
    session.refresh(attempt)
    return attempt


# ===================== PAUSE / RESUME =====================


def _transition(
    session: Session,
    attempt_id: int,
    student_id: int,
    allowed: frozenset,
    target: AttemptStatus,
    now: Optional[datetime],
) -> Attempt:
    now = now or utcnow()
    attempt = get_owned_attempt(session, attempt_id, student_id)
    assessment = session.get(Assessment, attempt.assessment_id)

    if timing.enforce_expiry(session, attempt, assessment, now):
        raise InvalidState("Time has expired and the attempt was submitted", {"status": attempt.status.value})
    if attempt.status not in allowed:
        raise InvalidState(
            f"Cannot move attempt from '{attempt.status.value}' to '{target.value}'",
            {"status": attempt.status.value},
        )

    attempt.status = target
    attempt.updated_at = now
    session.add(attempt)
    session.commit()
    session.refresh(attempt)
    logger.info("Attempt %s is now %s", attempt.id, target.value)
    return attempt


def pause_attempt(session: Session, attempt_id: int, student_id: int, now: Optional[datetime] = None) -> Attempt:
    """Pause an attempt. The clock keeps running while paused."""
    return _transition(
        session,
        attempt_id,
        student_id,
        frozenset({AttemptStatus.STARTED, AttemptStatus.IN_PROGRESS}),
        AttemptStatus.PAUSED,
        now,
    )


def resume_attempt(session: Session, attempt_id: int, student_id: int, now: Optional[datetime] = None) -> Attempt:
    return _transition(
        session,
        attempt_id,
        student_id,
        frozenset({AttemptStatus.PAUSED}),
        AttemptStatus.IN_PROGRESS,
        now,
    )


# ===================== VIEWS =====================


def attempt_summary(attempt: Attempt) -> dict[str, Any]:
    """Scoring summary of a finished attempt."""
    return {
        "attempt_id": attempt.id,
        "attempt_number": attempt.attempt_number,
        "status": attempt.status.value,
        "submitted_at": attempt.submitted_at,
        "submission_method": attempt.submission_method.value if attempt.submission_method else None,
        "time_taken": attempt.time_taken,
        "total_marks": attempt.total_marks,
        "marks_obtained": attempt.marks_obtained,
        "negative_marks": attempt.negative_marks,
        "percentage": attempt.percentage,
        "grade": attempt.grade,
        "is_late": attempt.is_late,
        "late_penalty": attempt.late_penalty,
        "breakdown": attempt.breakdown,
    }


def _question_view(question: Question, response: AttemptResponse) -> dict[str, Any]:
    options_by_key = {option["key"]: option["text"] for option in question.options}
    return {
        "question_id": question.id,
        "position": response.position,
        "type": response.question_type.value,
        "question_text": question.question_text,
        "options": [{"key": key, "text": options_by_key[key]} for key in response.option_order],
        "marks": response.max_marks,
        "time_limit_minutes": response.time_limit_minutes,
        "is_optional": response.is_optional,
        "response": {
            "answer": response.answer,
            "is_answered": response.is_answered,
            "is_marked_for_review": response.is_marked_for_review,
            "time_spent_seconds": response.time_spent_seconds,
            "saved_at": response.saved_at,
            "is_correct": response.is_correct,
            "marks_awarded": grading.shown_marks(response),
        },
    }


def attempt_view(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """What the student sees while taking the attempt.

    Questions come in the attempt's own order with options in the attempt's
    own order. Correct answers and explanations are never included.
    """
    now = now or utcnow()
    responses = list_responses(session, attempt.id)
    questions = {
        q.id: q
        for q in session.exec(select(Question).where(Question.id.in_([r.question_id for r in responses]))).all()
    }
    live = attempt.status in LIVE_STATUSES

    view = {
        "attempt_id": attempt.id,
        "assessment_id": assessment.id,
        "attempt_number": attempt.attempt_number,
        "status": attempt.status.value,
        "started_at": attempt.started_at,
        "deadline": timing.deadline_for(attempt, assessment),
        "time_remaining": timing.minutes_remaining(attempt, assessment, now) if live else 0,
        "seconds_remaining": timing.seconds_remaining(attempt, assessment, now) if live else 0,
        "assessment": {
            "title": assessment.title,
            "description": assessment.description,
            "duration_minutes": assessment.duration_minutes,
            "total_marks": assessment.total_marks,
            "passing_marks": assessment.passing_marks,
            "total_questions": len(responses),
            "negative_marking_enabled": assessment.negative_marking_enabled,
            "negative_marking_percentage": assessment.negative_marking_percentage,
        },
        "questions": [_question_view(questions[r.question_id], r) for r in responses],
    }
    if not live and catalog.results_visible(assessment, now):
        view["result"] = attempt_summary(attempt)
    return view
