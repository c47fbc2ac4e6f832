"""Teacher routes for authoring questions and assessments."""

from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi import status as http_status
from sqlmodel import Session

from exam_engine.database import get_session
from exam_engine.deps import Principal, require_role
from exam_engine.models import Assessment, Question
from exam_engine.schemas import AssessmentCreate, AssessmentStatusIn, ParticipantsIn, QuestionCreate
from exam_engine.services import catalog, scoring

router = APIRouter()

staff_only = require_role(["teacher", "admin"])


def _question_out(question: Question) -> dict[str, Any]:
    return {
        "id": question.id,
        "type": question.type.value,
        "question_text": question.question_text,
        "options": question.options,
        "correct_answer": question.correct_answer,
        "marks": question.marks,
        "explanation": question.explanation,
    }


def _assessment_out(session: Session, assessment: Assessment) -> dict[str, Any]:
    slots = catalog.list_assessment_questions(session, assessment.id)
    bands = catalog.list_grade_bands(session, assessment.id)
    return {
        "id": assessment.id,
        "title": assessment.title,
        "description": assessment.description,
        "status": assessment.status.value,
        "created_by": assessment.created_by,
        "duration_minutes": assessment.duration_minutes,
        "max_attempts": assessment.max_attempts,
        "attempt_delay_minutes": assessment.attempt_delay_minutes,
        "shuffle_questions": assessment.shuffle_questions,
        "shuffle_options": assessment.shuffle_options,
        "negative_marking": {
            "enabled": assessment.negative_marking_enabled,
            "percentage": assessment.negative_marking_percentage,
        },
        "partial_marking": assessment.partial_marking,
        "result_visibility": assessment.result_visibility.value,
        "results_released": assessment.results_released,
        "open_access": assessment.open_access,
        "schedule": {
            "start_time": assessment.start_time,
            "end_time": assessment.end_time,
            "grace_period_minutes": assessment.grace_period_minutes,
            "late_submission_allowed": assessment.late_submission_allowed,
            "late_penalty_percentage": assessment.late_penalty_percentage,
        },
        "total_marks": assessment.total_marks,
        "passing_marks": assessment.passing_marks,
        "questions": [
            {"question_id": s.question_id, "marks": s.marks, "position": s.position, "is_optional": s.is_optional}
            for s in slots
        ],
        "grading_scale": [{"label": b.label, "min": b.min_percentage, "max": b.max_percentage} for b in bands],
        "participants": [
            {
                "student_id": p.student_id,
                "status": p.status.value,
                "attempts": p.attempts,
                "last_attempt_at": p.last_attempt_at,
                "score": p.score,
                "grade": p.grade,
            }
            for p in catalog.list_participants(session, assessment.id)
        ],
    }


@router.post("/questions", status_code=http_status.HTTP_201_CREATED)
def api_create_question(
    payload: QuestionCreate = Body(...),
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    question = catalog.create_question(session, payload, created_by=current_user.user_id)
    return _question_out(question)


@router.post("/assessments", status_code=http_status.HTTP_201_CREATED)
def api_create_assessment(
    payload: AssessmentCreate = Body(...),
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.create_assessment(session, payload, created_by=current_user.user_id)
    return _assessment_out(session, assessment)


@router.get("/assessments/{assessment_id}")
def api_get_assessment(
    assessment_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    return _assessment_out(session, assessment)


@router.post("/assessments/{assessment_id}/publish")
def api_publish_assessment(
    assessment_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    assessment = catalog.publish_assessment(session, assessment)
    return {"id": assessment.id, "status": assessment.status.value, "published_at": assessment.published_at}


@router.post("/assessments/{assessment_id}/participants")
def api_add_participants(
    assessment_id: int,
    payload: ParticipantsIn = Body(...),
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    added = catalog.add_participants(session, assessment, payload.student_ids)
    return {"assessment_id": assessment.id, "added": added}


@router.post("/assessments/{assessment_id}/release-results")
def api_release_results(
    assessment_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    assessment = catalog.release_results(session, assessment)
    return {"assessment_id": assessment.id, "results_released": assessment.results_released}


@router.get("/assessments/{assessment_id}/statistics")
def api_assessment_statistics(
    assessment_id: int,
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    return scoring.assessment_statistics(session, assessment)


@router.post("/assessments/{assessment_id}/status")
def api_set_assessment_status(
    assessment_id: int,
    payload: AssessmentStatusIn = Body(...),
    current_user: Principal = Depends(staff_only),
    session: Session = Depends(get_session),
):
    assessment = catalog.get_assessment(session, assessment_id)
    catalog.ensure_can_manage(assessment, current_user.user_id, current_user.role)
    assessment = catalog.set_assessment_status(session, assessment, payload.status)
    return {"id": assessment.id, "status": assessment.status.value}
