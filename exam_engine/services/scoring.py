"""Submission finalizer, statistics, manual grading and results.

An attempt leaves the live states exactly once. ``finalize_attempt`` claims
the attempt with a conditional UPDATE on its ``live`` marker, so a manual
submit racing the expiry check (or a double click) finalizes and counts
towards the statistics only once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import case, func, update
from sqlmodel import Session, select

from exam_engine.exceptions import AlreadySubmitted, InvalidState, NotAvailableYet, NotFound, ValidationFailed
from exam_engine.models import (
    SUBJECTIVE_TYPES,
    TERMINAL_STATUSES,
    Assessment,
    Attempt,
    AttemptResponse,
    AttemptStatus,
    Question,
    SubmissionMethod,
)
from exam_engine.services import catalog, sessions, timing
from exam_engine.services.grading import display_marks
from exam_engine.utils import minutes_between, round_half_up, sanitize_plain_text, utcnow, validate_marks

logger = logging.getLogger(__name__)


# ===================== SCORING =====================


@dataclass
class ScoreSummary:
    positive: float = 0.0
    negative: float = 0.0
    marks_obtained: float = 0.0
    percentage: int = 0
    breakdown: dict[str, Any] = field(default_factory=dict)


def response_value(response: AttemptResponse) -> float:
    """Marks a response contributes to the total; a manual grade overrides the auto grade."""
    if response.manual_marks is not None:
        return response.manual_marks
    return response.marks_awarded or 0.0


def percentage_of(marks: float, total_marks: float) -> int:
    if not total_marks:
        return 0
    return min(100, max(0, round_half_up(marks / total_marks * 100)))


def compute_score(responses: Iterable[AttemptResponse], total_marks: float) -> ScoreSummary:
    """Sum positive and negative marks separately, then floor the net at zero.

    Individual penalties stay signed until this point so that a wrong answer
    can cost marks earned elsewhere.
    """
    summary = ScoreSummary()
    for response in responses:
        value = response_value(response)
        if value > 0:
            summary.positive += value
        elif value < 0:
            summary.negative += -value

        if response.question_type in SUBJECTIVE_TYPES:
            bucket = summary.breakdown.setdefault("subjective", {"total": 0, "marks": 0.0})
        else:
            bucket = summary.breakdown.setdefault(response.question_type.value, {"total": 0, "correct": 0, "marks": 0.0})
            bucket["correct"] += int(bool(response.is_correct))
        bucket["total"] += 1
        bucket["marks"] += value

    summary.marks_obtained = max(0.0, summary.positive - summary.negative)
    summary.percentage = percentage_of(summary.marks_obtained, total_marks)
    return summary


def _apply_score(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    responses: List[AttemptResponse],
) -> None:
    summary = compute_score(responses, attempt.total_marks)
    marks = summary.marks_obtained
    penalty = 0.0
    if attempt.is_late and assessment.late_penalty_percentage:
        penalty = marks * assessment.late_penalty_percentage / 100
        marks = max(0.0, marks - penalty)

    attempt.marks_obtained = marks
    attempt.negative_marks = summary.negative
    attempt.late_penalty = penalty
    attempt.percentage = percentage_of(marks, attempt.total_marks)
    attempt.grade = catalog.grade_for(catalog.list_grade_bands(session, assessment.id), attempt.percentage)
    attempt.breakdown = summary.breakdown


def is_passed(attempt: Attempt, assessment: Assessment) -> bool:
    return attempt.percentage >= catalog.passing_percentage(assessment)


# ===================== STATISTICS =====================


def record_statistics(session: Session, assessment: Assessment, attempt: Attempt) -> None:
    """Fold one finished attempt into the running statistics in a single UPDATE."""
    score = float(attempt.percentage)
    taken = float(attempt.time_taken or 0)
    passed = 1 if is_passed(attempt, assessment) else 0
    completed = Assessment.total_completed

    session.exec(
        update(Assessment)
        .where(Assessment.id == assessment.id)
        .values(
            total_completed=completed + 1,
            pass_count=Assessment.pass_count + passed,
            average_score=(Assessment.average_score * completed + score) / (completed + 1),
            average_time=(Assessment.average_time * completed + taken) / (completed + 1),
            highest_score=case(
                (Assessment.highest_score.is_(None), score),
                (Assessment.highest_score < score, score),
                else_=Assessment.highest_score,
            ),
            lowest_score=case(
                (Assessment.lowest_score.is_(None), score),
                (Assessment.lowest_score > score, score),
                else_=Assessment.lowest_score,
            ),
            pass_rate=(Assessment.pass_count + passed) * 1.0 / (completed + 1),
        )
        .execution_options(synchronize_session=False)
    )


def _statistics_columns(assessment: Assessment) -> dict[str, Any]:
    finished = (Attempt.assessment_id == assessment.id) & Attempt.status.in_(list(TERMINAL_STATUSES))
    passing = catalog.passing_percentage(assessment)
    passed = case((Attempt.percentage >= passing, 1.0), else_=0.0)

    def scalar(expr):
        return select(expr).where(finished).scalar_subquery()

    return {
        "total_started": select(func.count(Attempt.id)).where(Attempt.assessment_id == assessment.id).scalar_subquery(),
        "total_completed": scalar(func.count(Attempt.id)),
        "pass_count": scalar(func.coalesce(func.sum(passed), 0)),
        "average_score": scalar(func.coalesce(func.avg(Attempt.percentage), 0)),
        "average_time": scalar(func.coalesce(func.avg(Attempt.time_taken), 0)),
        "highest_score": scalar(func.max(Attempt.percentage)),
        "lowest_score": scalar(func.min(Attempt.percentage)),
        "pass_rate": scalar(func.coalesce(func.avg(passed), 0)),
    }


def derive_statistics(session: Session, assessment: Assessment) -> dict[str, Any]:
    """Compute the statistics from the attempts themselves, without writing."""
    columns = _statistics_columns(assessment)
    row = session.exec(select(*[expr.label(name) for name, expr in columns.items()])).one()
    stats = dict(row._mapping)
    for key in ("total_started", "total_completed", "pass_count"):
        stats[key] = int(stats[key] or 0)
    return stats


def rebuild_statistics(session: Session, assessment: Assessment) -> Assessment:
    """Recompute the stored statistics from scratch in one UPDATE.

    Used after a manual grade changes a finished attempt's percentage, where
    an incremental update would need the old value.
    """
    session.exec(
        update(Assessment)
        .where(Assessment.id == assessment.id)
        .values(**_statistics_columns(assessment))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.refresh(assessment)
    return assessment


def statistics_view(assessment: Assessment) -> dict[str, Any]:
    return {
        "assessment_id": assessment.id,
        "total_started": assessment.total_started,
        "total_completed": assessment.total_completed,
        "pass_count": assessment.pass_count,
        "average_score": assessment.average_score,
        "average_time": assessment.average_time,
        "highest_score": assessment.highest_score,
        "lowest_score": assessment.lowest_score,
        "pass_rate": assessment.pass_rate,
    }


def assessment_statistics(
    session: Session,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Stored statistics, after folding in any attempt that ran out of time unseen."""
    timing.expire_overdue_attempts(session, assessment, now)
    session.refresh(assessment)
    return statistics_view(assessment)


# ===================== FINALIZE / SUBMIT =====================


def finalize_attempt(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    method: SubmissionMethod,
    now: Optional[datetime] = None,
) -> Attempt:
    """Score the attempt, move it to a terminal state and update statistics.

    Raises:
        AlreadySubmitted: If another request finalized the attempt first
    """
    now = now or utcnow()
    target = AttemptStatus.SUBMITTED if method == SubmissionMethod.MANUAL else AttemptStatus.AUTO_SUBMITTED

    claimed = session.exec(
        update(Attempt)
        .where(Attempt.id == attempt.id, Attempt.live == True)  # noqa: E712
        .values(status=target, live=None, submitted_at=now, submission_method=method, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        session.rollback()
        session.refresh(attempt)
        raise AlreadySubmitted("Attempt has already been submitted", sessions.attempt_summary(attempt))

    deadline = timing.deadline_for(attempt, assessment)
    ended_at = min(now, deadline)
    cutoff = assessment.end_time + timedelta(minutes=assessment.grace_period_minutes)

    attempt.status = target
    attempt.live = None
    attempt.submitted_at = now
    attempt.submission_method = method
    attempt.updated_at = now
    attempt.time_taken = minutes_between(attempt.started_at, ended_at)
    attempt.time_remaining = timing.minutes_remaining(attempt, assessment, now)
    attempt.is_late = assessment.late_submission_allowed and ended_at > cutoff

    _apply_score(session, attempt, assessment, sessions.list_responses(session, attempt.id))
    session.add(attempt)
    record_statistics(session, assessment, attempt)
    catalog.mark_participant_scored(session, attempt)
    session.commit()
    session.refresh(attempt)
    session.refresh(assessment)

    logger.info(
        "Attempt %s finalized (%s): %.2f/%.2f marks, %d%%, grade %s",
        attempt.id,
        method.value,
        attempt.marks_obtained,
        attempt.total_marks,
        attempt.percentage,
        attempt.grade,
    )
    return attempt


def submit_attempt(
    session: Session,
    attempt_id: int,
    student_id: int,
    now: Optional[datetime] = None,
) -> Tuple[Attempt, Assessment]:
    """Submit on the student's request.

    An attempt found past its deadline is auto-submitted instead and that
    result is returned. Submitting a finished attempt raises
    ``AlreadySubmitted`` carrying the stored result.
    """
    now = now or utcnow()
    attempt = sessions.get_owned_attempt(session, attempt_id, student_id)
    assessment = session.get(Assessment, attempt.assessment_id)

    if attempt.status in TERMINAL_STATUSES:
        logger.warning("Attempt %s submitted again after %s", attempt.id, attempt.status.value)
        raise AlreadySubmitted("Attempt has already been submitted", sessions.attempt_summary(attempt))

    if timing.enforce_expiry(session, attempt, assessment, now):
        return attempt, assessment

    finalize_attempt(session, attempt, assessment, SubmissionMethod.MANUAL, now=now)
    return attempt, assessment


def _question_details(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
) -> List[dict[str, Any]]:
    responses = sessions.list_responses(session, attempt.id)
    questions = {
        q.id: q
        for q in session.exec(select(Question).where(Question.id.in_([r.question_id for r in responses]))).all()
    }
    details = []
    for response in responses:
        question = questions[response.question_id]
        item = {
            "question_id": question.id,
            "type": response.question_type.value,
            "question_text": question.question_text,
            "answer": response.answer,
            "is_correct": response.is_correct,
            "marks_awarded": response.final_marks,
            "max_marks": response.max_marks,
            "feedback": response.grader_feedback,
        }
        if assessment.show_correct_answers:
            item["correct_answer"] = question.correct_answer
        if assessment.show_explanations:
            item["explanation"] = question.explanation
        details.append(item)
    return details


def submission_view(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Acknowledgement returned from submit, with the result when visible."""
    view = {
        "attempt_id": attempt.id,
        "status": attempt.status.value,
        "submitted_at": attempt.submitted_at,
        "submission_method": attempt.submission_method.value if attempt.submission_method else None,
        "time_taken": attempt.time_taken,
    }
    if catalog.results_visible(assessment, now):
        result = sessions.attempt_summary(attempt)
        result["passed"] = is_passed(attempt, assessment)
        if assessment.show_correct_answers:
            result["questions"] = _question_details(session, attempt, assessment)
        view["result"] = result
    return view


# ===================== RESULTS =====================


def get_results(
    session: Session,
    assessment_id: int,
    student_id: int,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """All finished attempts of a student, with the best one expanded.

    A live attempt found past its deadline is auto-submitted first and then
    reported like any other finished attempt.

    Raises:
        NotFound: If the student has no finished attempt
        NotAvailableYet: If the visibility policy still hides results
    """
    now = now or utcnow()
    assessment = catalog.get_assessment(session, assessment_id)
    live = sessions.find_live_attempt(session, assessment.id, student_id)
    if live:
        timing.enforce_expiry(session, live, assessment, now)
        session.commit()

    finished = [a for a in sessions.list_attempts(session, assessment_id, student_id) if a.status in TERMINAL_STATUSES]
    if not finished:
        raise NotFound("No completed attempts found")
    if not catalog.results_visible(assessment, now):
        raise NotAvailableYet(
            "Results are not available yet",
            {"result_visibility": assessment.result_visibility.value, "end_time": assessment.end_time},
        )

    # max() keeps the first of equal percentages, i.e. the earliest attempt
    best = max(finished, key=lambda a: a.percentage)
    best_view = sessions.attempt_summary(best)
    best_view["passed"] = is_passed(best, assessment)
    best_view["questions"] = _question_details(session, best, assessment)

    return {
        "assessment": {
            "id": assessment.id,
            "title": assessment.title,
            "total_marks": assessment.total_marks,
            "passing_marks": assessment.passing_marks,
        },
        "best_attempt": best_view,
        "attempts": [sessions.attempt_summary(a) for a in finished],
    }


# ===================== MANUAL GRADING =====================


def apply_manual_grade(
    session: Session,
    attempt_id: int,
    question_id: int,
    marks: float,
    grader_id: int,
    grader_role: str,
    feedback: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Attempt:
    """Record a grader's marks for one response and rescore the attempt.

    Once every subjective response carries a manual grade the attempt moves
    to ``graded``. Statistics are rebuilt since the percentage may change.

    Raises:
        NotFound: If the attempt or question is unknown
        NotAuthorized: If the grader does not manage the assessment
        InvalidState: If the attempt is still being taken
        ValidationFailed: If marks fall outside ``[0, max_marks]``
    """
    now = now or utcnow()
    attempt = session.get(Attempt, attempt_id)
    if not attempt:
        raise NotFound(f"Attempt {attempt_id} not found")
    assessment = catalog.get_assessment(session, attempt.assessment_id)
    catalog.ensure_can_manage(assessment, grader_id, grader_role)

    if attempt.status not in TERMINAL_STATUSES:
        raise InvalidState("Attempt has not been submitted yet", {"status": attempt.status.value})

    response = sessions.get_response(session, attempt.id, question_id)
    try:
        validate_marks(marks, response.max_marks)
    except ValueError as exc:
        raise ValidationFailed(str(exc), {"max_marks": response.max_marks}) from exc

    response.manual_marks = marks
    response.final_marks = display_marks(marks)
    response.grader_feedback = sanitize_plain_text(feedback) if feedback else None
    response.graded_by = grader_id
    response.graded_at = now
    session.add(response)

    responses = sessions.list_responses(session, attempt.id)
    _apply_score(session, attempt, assessment, responses)
    subjective = [r for r in responses if r.question_type in SUBJECTIVE_TYPES]
    if all(r.manual_marks is not None for r in subjective):
        attempt.status = AttemptStatus.GRADED
    attempt.updated_at = now
    session.add(attempt)
    catalog.mark_participant_scored(session, attempt)
    session.commit()

    rebuild_statistics(session, assessment)
    session.refresh(attempt)
    logger.info(
        "Grader %s awarded %.2f on question %s of attempt %s; attempt now %d%%",
        grader_id,
        marks,
        question_id,
        attempt.id,
        attempt.percentage,
    )
    return attempt


def list_submitted_attempts(
    session: Session,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> List[Attempt]:
    timing.expire_overdue_attempts(session, assessment, now)
    stmt = (
        select(Attempt)
        .where(Attempt.assessment_id == assessment.id, Attempt.status.in_(list(TERMINAL_STATUSES)))
        .order_by(Attempt.submitted_at)
    )
    return session.exec(stmt).all()
