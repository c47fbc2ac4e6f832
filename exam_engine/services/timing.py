"""Attempt clock.

There is no background timer: every read or write that touches an attempt
asks this module whether the attempt is past its deadline, and an overdue
attempt is auto-submitted on the spot.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from exam_engine.exceptions import AlreadySubmitted
from exam_engine.models import LIVE_STATUSES, Assessment, Attempt, SubmissionMethod
from exam_engine.utils import utcnow

logger = logging.getLogger(__name__)


def deadline_for(attempt: Attempt, assessment: Assessment) -> datetime:
    """When the attempt stops accepting answers.

    The duration always applies. Unless late submission is allowed, the
    schedule end plus grace period caps it as well.
    """
    deadline = attempt.started_at + timedelta(minutes=assessment.duration_minutes)
    if not assessment.late_submission_allowed:
        cutoff = assessment.end_time + timedelta(minutes=assessment.grace_period_minutes)
        deadline = min(deadline, cutoff)
    return deadline


def seconds_remaining(attempt: Attempt, assessment: Assessment, now: datetime) -> int:
    remaining = (deadline_for(attempt, assessment) - now).total_seconds()
    return max(0, math.ceil(remaining))


def minutes_remaining(attempt: Attempt, assessment: Assessment, now: datetime) -> int:
    """Whole minutes left, i.e. ``duration - floor(elapsed)``; 0 exactly when expired."""
    remaining = (deadline_for(attempt, assessment) - now).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 60)


def is_expired(attempt: Attempt, assessment: Assessment, now: datetime) -> bool:
    return now >= deadline_for(attempt, assessment)


def enforce_expiry(
    session: Session,
    attempt: Attempt,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> bool:
    """Refresh ``time_remaining`` and auto-submit the attempt if it is overdue.

    Must run before any request is allowed to act on a live attempt.

    Returns:
        True if this call auto-submitted the attempt, False otherwise
        (including when the attempt was already terminal).
    """
    now = now or utcnow()
    if attempt.status not in LIVE_STATUSES:
        return False

    if not is_expired(attempt, assessment, now):
        attempt.time_remaining = minutes_remaining(attempt, assessment, now)
        session.add(attempt)
        return False

    from exam_engine.services.scoring import finalize_attempt

    logger.info(
        "Attempt %s exceeded its deadline (%s); auto-submitting",
        attempt.id,
        deadline_for(attempt, assessment).isoformat(),
    )
    try:
        finalize_attempt(session, attempt, assessment, SubmissionMethod.TIME_EXPIRED, now=now)
    except AlreadySubmitted:
        logger.debug("Attempt %s was finalized by a concurrent request", attempt.id)
    return True


def expire_overdue_attempts(session: Session, assessment: Assessment, now: Optional[datetime] = None) -> int:
    """Auto-submit every live attempt of ``assessment`` that is past its deadline.

    Teacher-facing reads run this first so that listings and statistics never
    count an overdue attempt as still running. Returns how many were submitted.
    """
    now = now or utcnow()
    stmt = select(Attempt).where(
        Attempt.assessment_id == assessment.id,
        Attempt.live == True,  # noqa: E712
    )
    expired = 0
    for attempt in session.exec(stmt).all():
        if enforce_expiry(session, attempt, assessment, now):
            expired += 1
    session.commit()
    if expired:
        logger.info("Auto-submitted %d overdue attempt(s) of assessment %s", expired, assessment.id)
    return expired
