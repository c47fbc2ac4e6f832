"""Student routes for taking an assessment."""

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi import status as http_status
from sqlmodel import Session

from exam_engine.database import get_session
from exam_engine.deps import Principal, require_role
from exam_engine.models import Assessment
from exam_engine.schemas import SaveAnswerIn, SecurityEventIn
from exam_engine.services import answers, scoring, security, sessions

router = APIRouter()

student_only = require_role(["student"])


# ===================== SESSION =====================


@router.post("/assessments/{assessment_id}/start")
def api_start_attempt(
    assessment_id: int,
    request: Request,
    response: Response,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    attempt, created = sessions.start_attempt(
        session,
        assessment_id,
        current_user.user_id,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    response.status_code = http_status.HTTP_201_CREATED if created else http_status.HTTP_200_OK
    assessment = session.get(Assessment, attempt.assessment_id)
    view = sessions.attempt_view(session, attempt, assessment)
    view["resumed"] = not created
    return view


@router.get("/assessments/{assessment_id}/attempt")
def api_current_attempt(
    assessment_id: int,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    attempt = sessions.get_current_attempt(session, assessment_id, current_user.user_id)
    assessment = session.get(Assessment, attempt.assessment_id)
    return sessions.attempt_view(session, attempt, assessment)


@router.post("/attempts/{attempt_id}/pause")
def api_pause_attempt(
    attempt_id: int,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    attempt = sessions.pause_attempt(session, attempt_id, current_user.user_id)
    return {"attempt_id": attempt.id, "status": attempt.status.value, "time_remaining": attempt.time_remaining}


@router.post("/attempts/{attempt_id}/resume")
def api_resume_attempt(
    attempt_id: int,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    attempt = sessions.resume_attempt(session, attempt_id, current_user.user_id)
    return {"attempt_id": attempt.id, "status": attempt.status.value, "time_remaining": attempt.time_remaining}


# ===================== ANSWERS / SUBMISSION =====================


@router.post("/attempts/{attempt_id}/answers")
def api_save_answer(
    attempt_id: int,
    payload: SaveAnswerIn = Body(...),
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    return answers.save_answer(session, attempt_id, current_user.user_id, payload)


@router.post("/attempts/{attempt_id}/submit")
def api_submit_attempt(
    attempt_id: int,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    attempt, assessment = scoring.submit_attempt(session, attempt_id, current_user.user_id)
    return scoring.submission_view(session, attempt, assessment)


@router.get("/assessments/{assessment_id}/results")
def api_results(
    assessment_id: int,
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    return scoring.get_results(session, assessment_id, current_user.user_id)


# ===================== SECURITY EVENTS =====================


@router.post("/attempts/{attempt_id}/security-events", status_code=http_status.HTTP_201_CREATED)
def api_record_security_event(
    attempt_id: int,
    payload: SecurityEventIn = Body(...),
    current_user: Principal = Depends(student_only),
    session: Session = Depends(get_session),
):
    event = security.record_event(session, attempt_id, current_user.user_id, payload)
    return security.event_view(event)
