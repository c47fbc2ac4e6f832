"""Question reference lookups and assessment definitions.

Questions and assessments are authored by teachers; the attempt path only
reads them. Everything here validates the invariants attempts rely on:
total marks equal the sum of question marks, passing marks fit inside the
total, the schedule window is ordered, and the grading scale covers 0..100
exactly once.
"""

import logging
import math
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from exam_engine.config import get_settings
from exam_engine.exceptions import InvalidState, NotAuthorized, NotFound, ValidationFailed
from exam_engine.models import (
    CHOICE_TYPES,
    OPEN_ASSESSMENT_STATUSES,
    Assessment,
    AssessmentParticipant,
    AssessmentQuestion,
    AssessmentStatus,
    Attempt,
    AttemptStatus,
    GradeBand,
    ParticipantStatus,
    Question,
    QuestionType,
    ResultVisibility,
)
from exam_engine.schemas import AssessmentCreate, GradeBandIn, QuestionCreate
from exam_engine.utils import sanitize_question_text, utcnow

logger = logging.getLogger(__name__)

DEFAULT_GRADING_SCALE = [
    ("A+", 90, 100, "Outstanding"),
    ("A", 80, 89, "Excellent"),
    ("B", 70, 79, "Good"),
    ("C", 60, 69, "Satisfactory"),
    ("D", 50, 59, "Acceptable"),
    ("F", 0, 49, "Needs Improvement"),
]
DEFAULT_PASSING_RATIO = 0.4
TRUE_FALSE_OPTIONS = [{"key": "True", "text": "True"}, {"key": "False", "text": "False"}]

# Allowed forward moves for the assessment lifecycle
STATUS_TRANSITIONS = {
    AssessmentStatus.DRAFT: {AssessmentStatus.PUBLISHED, AssessmentStatus.CANCELLED},
    AssessmentStatus.PUBLISHED: {AssessmentStatus.ACTIVE, AssessmentStatus.COMPLETED, AssessmentStatus.CANCELLED},
    AssessmentStatus.ACTIVE: {AssessmentStatus.COMPLETED, AssessmentStatus.CANCELLED},
    AssessmentStatus.COMPLETED: {AssessmentStatus.ARCHIVED},
    AssessmentStatus.ARCHIVED: set(),
    AssessmentStatus.CANCELLED: {AssessmentStatus.ARCHIVED},
}


# ===================== QUESTION REFERENCE =====================


def create_question(session: Session, payload: QuestionCreate, created_by: Optional[int] = None) -> Question:
    text = sanitize_question_text(payload.question_text)
    if not text:
        raise ValidationFailed("Question text cannot be empty after sanitization")

    options = [o.model_dump() for o in payload.options]
    correct = payload.correct_answer

    if payload.type in CHOICE_TYPES:
        if payload.type == QuestionType.TRUE_FALSE and not options:
            options = list(TRUE_FALSE_OPTIONS)
        if len(options) < 2:
            raise ValidationFailed("Choice questions need at least two options")
        keys = [o["key"].strip() for o in options]
        if len({k.lower() for k in keys}) != len(keys):
            raise ValidationFailed("Option keys must be unique")
        if not isinstance(correct, str) or correct.strip() not in keys:
            raise ValidationFailed("Correct answer must be one of the option keys", {"options": keys})
        correct = correct.strip()
    elif payload.type == QuestionType.FILL_BLANKS:
        if not isinstance(correct, list) or not correct or any(not str(c).strip() for c in correct):
            raise ValidationFailed("Fill-in-blank questions need a non-empty answer for every blank")
        options = []
    else:
        # Subjective questions are graded by people, there is no key to store
        options = []
        correct = None

    question = Question(
        type=payload.type,
        question_text=text,
        options=options,
        correct_answer=correct,
        marks=payload.marks,
        explanation=payload.explanation,
        created_by=created_by,
    )
    session.add(question)
    session.commit()
    session.refresh(question)
    return question


def get_question(session: Session, question_id: int) -> Question:
    question = session.get(Question, question_id)
    if not question:
        raise NotFound(f"Question {question_id} not found")
    return question


# ===================== GRADING SCALE =====================


def validate_grading_scale(bands: Iterable[GradeBandIn]) -> List[GradeBandIn]:
    """Check that bands are well-formed, non-overlapping and cover 0..100.

    Returns the bands in the order they were given; that order is the order
    they are matched in.
    """
    bands = list(bands)
    if not bands:
        raise ValidationFailed("Grading scale cannot be empty")

    covered: set[int] = set()
    labels: set[str] = set()
    for band in bands:
        if band.min > band.max:
            raise ValidationFailed(f"Grade band {band.label} has min above max")
        if band.label in labels:
            raise ValidationFailed(f"Grade band {band.label} is defined twice")
        labels.add(band.label)
        span = set(range(band.min, band.max + 1))
        if covered & span:
            raise ValidationFailed(f"Grade band {band.label} overlaps another band")
        covered |= span

    missing = sorted(set(range(0, 101)) - covered)
    if missing:
        raise ValidationFailed("Grading scale must cover every percentage from 0 to 100", {"missing": missing[:10]})
    return bands


def default_grading_scale() -> List[GradeBandIn]:
    return [GradeBandIn(label=label, min=lo, max=hi, description=desc) for label, lo, hi, desc in DEFAULT_GRADING_SCALE]


def list_grade_bands(session: Session, assessment_id: int) -> List[GradeBand]:
    stmt = select(GradeBand).where(GradeBand.assessment_id == assessment_id).order_by(GradeBand.position)
    return session.exec(stmt).all()


def grade_for(bands: Iterable[GradeBand], percentage: int) -> Optional[str]:
    """First band (in scale order) whose [min, max] holds ``percentage``."""
    for band in bands:
        if band.min_percentage <= percentage <= band.max_percentage:
            return band.label
    return None


# ===================== ASSESSMENT DEFINITION =====================


def create_assessment(session: Session, payload: AssessmentCreate, created_by: int) -> Assessment:
    """Create an assessment in draft state together with its question slots.

    Raises:
        ValidationFailed: If the schedule, marks or grading scale are invalid
        NotFound: If a referenced question does not exist
    """
    schedule = payload.schedule
    if schedule.start_time >= schedule.end_time:
        raise ValidationFailed("Schedule start must be before schedule end")

    seen: set[int] = set()
    slots = []
    for item in payload.questions:
        if item.question_id in seen:
            raise ValidationFailed(f"Question {item.question_id} is listed twice")
        seen.add(item.question_id)
        question = get_question(session, item.question_id)
        marks = item.marks if item.marks is not None else question.marks
        slots.append((item, marks))

    total_marks = sum(marks for _, marks in slots)
    passing_marks = payload.passing_marks
    if passing_marks is None:
        passing_marks = min(total_marks, math.ceil(total_marks * DEFAULT_PASSING_RATIO))
    if passing_marks > total_marks:
        raise ValidationFailed("Passing marks cannot exceed total marks", {"total_marks": total_marks})

    bands = validate_grading_scale(payload.grading_scale or default_grading_scale())

    assessment = Assessment(
        title=payload.title.strip(),
        description=payload.description,
        created_by=created_by,
        duration_minutes=payload.duration_minutes or get_settings().default_duration_minutes,
        shuffle_questions=payload.shuffle_questions,
        shuffle_options=payload.shuffle_options,
        max_attempts=payload.max_attempts,
        attempt_delay_minutes=payload.attempt_delay_minutes,
        negative_marking_enabled=payload.negative_marking.enabled,
        negative_marking_percentage=payload.negative_marking.percentage,
        partial_marking=payload.partial_marking,
        result_visibility=payload.result_visibility,
        show_correct_answers=payload.show_correct_answers,
        show_explanations=payload.show_explanations,
        open_access=payload.open_access,
        start_time=schedule.start_time,
        end_time=schedule.end_time,
        grace_period_minutes=schedule.grace_period_minutes,
        late_submission_allowed=schedule.late_submission_allowed,
        late_penalty_percentage=schedule.late_penalty_percentage,
        total_marks=total_marks,
        passing_marks=passing_marks,
    )
    session.add(assessment)
    session.flush()

    for position, (item, marks) in enumerate(slots, start=1):
        session.add(
            AssessmentQuestion(
                assessment_id=assessment.id,
                question_id=item.question_id,
                marks=marks,
                position=position,
                is_optional=item.is_optional,
                time_limit_minutes=item.time_limit_minutes,
            )
        )
    for position, band in enumerate(bands, start=1):
        session.add(
            GradeBand(
                assessment_id=assessment.id,
                label=band.label,
                min_percentage=band.min,
                max_percentage=band.max,
                position=position,
                description=band.description,
            )
        )
    for student_id in dict.fromkeys(payload.participants):
        session.add(AssessmentParticipant(assessment_id=assessment.id, student_id=student_id))

    session.commit()
    session.refresh(assessment)
    logger.info("Created assessment %s with %d questions (%.2f marks)", assessment.id, len(slots), total_marks)
    return assessment


def get_assessment(session: Session, assessment_id: int) -> Assessment:
    assessment = session.get(Assessment, assessment_id)
    if not assessment:
        raise NotFound(f"Assessment {assessment_id} not found")
    return assessment


def get_open_assessment(session: Session, assessment_id: int) -> Assessment:
    """Assessment as seen by students: drafts and closed ones do not exist."""
    assessment = get_assessment(session, assessment_id)
    if assessment.status not in OPEN_ASSESSMENT_STATUSES:
        raise NotFound(f"Assessment {assessment_id} not found")
    return assessment


def list_assessment_questions(session: Session, assessment_id: int) -> List[AssessmentQuestion]:
    stmt = (
        select(AssessmentQuestion)
        .where(AssessmentQuestion.assessment_id == assessment_id)
        .order_by(AssessmentQuestion.position)
    )
    return session.exec(stmt).all()


def passing_percentage(assessment: Assessment) -> float:
    if not assessment.total_marks:
        return 0.0
    return assessment.passing_marks / assessment.total_marks * 100


def ensure_can_manage(assessment: Assessment, user_id: int, role: str) -> None:
    """Only the creator (or an admin) may change an assessment or grade it."""
    if role == "admin":
        return
    if role == "teacher" and assessment.created_by == user_id:
        return
    raise NotAuthorized("You are not allowed to manage this assessment")


def is_participant(session: Session, assessment: Assessment, student_id: int) -> bool:
    if assessment.open_access:
        return True
    stmt = select(AssessmentParticipant).where(
        AssessmentParticipant.assessment_id == assessment.id,
        AssessmentParticipant.student_id == student_id,
    )
    return session.exec(stmt).first() is not None


def add_participants(session: Session, assessment: Assessment, student_ids: Iterable[int]) -> int:
    """Invite students; already-invited ones are skipped. Returns how many were added."""
    existing = set(
        session.exec(
            select(AssessmentParticipant.student_id).where(AssessmentParticipant.assessment_id == assessment.id)
        ).all()
    )
    added = 0
    for student_id in dict.fromkeys(student_ids):
        if student_id in existing:
            continue
        session.add(AssessmentParticipant(assessment_id=assessment.id, student_id=student_id))
        added += 1
    session.commit()
    return added


def list_participants(session: Session, assessment_id: int) -> List[AssessmentParticipant]:
    stmt = (
        select(AssessmentParticipant)
        .where(AssessmentParticipant.assessment_id == assessment_id)
        .order_by(AssessmentParticipant.student_id)
        .execution_options(populate_existing=True)
    )
    return session.exec(stmt).all()


def _update_participant(session: Session, assessment_id: int, student_id: int, **values) -> None:
    # Open-access students have no participant row; nothing to track then
    session.exec(
        update(AssessmentParticipant)
        .where(
            AssessmentParticipant.assessment_id == assessment_id,
            AssessmentParticipant.student_id == student_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def mark_participant_started(session: Session, assessment_id: int, student_id: int, started_at: datetime) -> None:
    """Count a new attempt against the participant. The caller commits."""
    _update_participant(
        session,
        assessment_id,
        student_id,
        status=ParticipantStatus.STARTED,
        attempts=AssessmentParticipant.attempts + 1,
        last_attempt_at=started_at,
    )


def mark_participant_scored(session: Session, attempt: Attempt) -> None:
    """Copy a finished attempt's score onto the participant. The caller commits."""
    status = ParticipantStatus.GRADED if attempt.status == AttemptStatus.GRADED else ParticipantStatus.COMPLETED
    _update_participant(
        session,
        attempt.assessment_id,
        attempt.student_id,
        status=status,
        score=attempt.percentage,
        grade=attempt.grade,
    )


def set_assessment_status(session: Session, assessment: Assessment, status: AssessmentStatus) -> Assessment:
    if status not in STATUS_TRANSITIONS[assessment.status]:
        raise InvalidState(
            f"Cannot move assessment from '{assessment.status.value}' to '{status.value}'",
            {"status": assessment.status.value},
        )
    assessment.status = status
    assessment.updated_at = utcnow()
    if status == AssessmentStatus.PUBLISHED:
        assessment.published_at = assessment.updated_at
    session.add(assessment)
    session.commit()
    session.refresh(assessment)
    logger.info("Assessment %s is now %s", assessment.id, status.value)
    return assessment


def publish_assessment(session: Session, assessment: Assessment) -> Assessment:
    return set_assessment_status(session, assessment, AssessmentStatus.PUBLISHED)


def release_results(session: Session, assessment: Assessment) -> Assessment:
    assessment.results_released = True
    assessment.updated_at = utcnow()
    session.add(assessment)
    session.commit()
    session.refresh(assessment)
    return assessment


def results_visible(assessment: Assessment, now: Optional[datetime] = None) -> bool:
    """Whether students may see their scores yet.

    An explicit release always wins; otherwise the configured policy decides.
    """
    now = now or utcnow()
    if assessment.results_released:
        return True
    policy = assessment.result_visibility
    if policy == ResultVisibility.IMMEDIATELY:
        return True
    if policy == ResultVisibility.AFTER_DEADLINE:
        return now > assessment.end_time
    if policy == ResultVisibility.AFTER_ALL_COMPLETE:
        return assessment.status in (AssessmentStatus.COMPLETED, AssessmentStatus.ARCHIVED)
    return False
