"""Teacher routes for reviewing and grading submitted attempts."""

from fastapi import APIRouter, Body, Depends
from sqlmodel import Session

from exam_engine.database import get_session
from exam_engine.deps import Principal, require_role
from exam_engine.exceptions import NotFound
from exam_engine.models import Assessment, Attempt
from exam_engine.schemas import ManualGradeIn
from exam_engine.services import catalog, scoring, security, sessions

router = APIRouter()

staff_only = require_role(["teacher", "admin"])


def _managed_attempt(session: Session, attempt_id: int, current_user: Principal) -> Attempt:
    attempt = session.get(Attempt, attempt_id)
    if not attempt:
        raise NotFound(f"Attempt {attempt_id} not found")
    assessment = session.get(Assessment, attempt.assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    return attempt


@router.get("/assessments/{assessment_id}/attempts")
def api_list_submitted_attempts(
    assessment_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    items = []
    for attempt in scoring.list_submitted_attempts(session, assessment):
        summary = sessions.attempt_summary(attempt)
        summary["student_id"] = attempt.student_id
        items.append(summary)
    return {"assessment_id": assessment.id, "attempts": items}


@router.post("/attempts/{attempt_id}/responses/{question_id}/grade")
def api_grade_response(
    attempt_id: int,
    question_id: int,
    payload: ManualGradeIn = Body(...),
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    attempt = scoring.apply_manual_grade(
        session,
        attempt_id,
        question_id,
        payload.marks,
        grader_id=current_user.user_id,
        grader_role=current_user.role,
        feedback=payload.feedback,
    )
    return sessions.attempt_summary(attempt)


@router.get("/attempts/{attempt_id}/security-events")
def api_list_security_events(
    attempt_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    attempt = _managed_attempt(session, attempt_id, current_user)
    events = security.list_events(session, attempt.id)
    return {
        "attempt_id": attempt.id,
        "summary": security.summarize_events(events),
        "events": [security.event_view(e) for e in events],
    }
