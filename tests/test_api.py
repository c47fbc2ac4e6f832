"""End-to-end HTTP flows against the FastAPI app."""

from datetime import timedelta

import pytest

from conftest import OTHER_TEACHER_ID, STUDENT_ID, TEACHER_ID, as_user
from exam_engine.utils import utcnow


@pytest.fixture
def published(client, teacher_headers):
    """A published assessment with one MCQ and one essay, open right now."""
    mcq = client.post(
        "/questions",
        json={
            "type": "mcq",
            "question_text": "Capital of France?",
            "options": [{"key": "A", "text": "Paris"}, {"key": "B", "text": "Rome"}],
            "correct_answer": "A",
            "marks": 5,
            "explanation": "Paris is the capital.",
        },
        headers=teacher_headers,
    )
    assert mcq.status_code == 201
    essay = client.post(
        "/questions",
        json={"type": "essay", "question_text": "Describe Paris.", "marks": 5},
        headers=teacher_headers,
    )
    assert essay.status_code == 201

    now = utcnow()
    created = client.post(
        "/assessments",
        json={
            "title": "Geography Quiz",
            "duration_minutes": 30,
            "schedule": {
                "start_time": (now - timedelta(hours=1)).isoformat(),
                "end_time": (now + timedelta(hours=2)).isoformat(),
            },
            "questions": [{"question_id": mcq.json()["id"]}, {"question_id": essay.json()["id"]}],
            "participants": [STUDENT_ID],
        },
        headers=teacher_headers,
    )
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "draft"
    assert body["total_marks"] == 10
    assert body["passing_marks"] == 4

    published = client.post(f"/assessments/{body['id']}/publish", headers=teacher_headers)
    assert published.status_code == 200
    assert published.json()["status"] == "published"
    return {"id": body["id"], "mcq_id": mcq.json()["id"], "essay_id": essay.json()["id"]}


class TestIdentity:
    def test_missing_identity_is_unauthenticated(self, client):
        assert client.post("/assessments/1/start").status_code == 401

    def test_student_cannot_author(self, client, student_headers):
        response = client.post("/questions", json={"type": "essay", "question_text": "x"}, headers=student_headers)
        assert response.status_code == 403

    def test_teacher_cannot_take_attempts(self, client, teacher_headers):
        assert client.post("/assessments/1/start", headers=teacher_headers).status_code == 403

    def test_health(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}


class TestTakingAnAssessment:
    def test_full_flow(self, client, published, student_headers, teacher_headers):
        start = client.post(f"/assessments/{published['id']}/start", headers=student_headers)
        assert start.status_code == 201
        attempt = start.json()
        attempt_id = attempt["attempt_id"]
        assert attempt["status"] == "started"
        assert attempt["time_remaining"] == 30
        assert all("correct_answer" not in q for q in attempt["questions"])

        resumed = client.post(f"/assessments/{published['id']}/start", headers=student_headers)
        assert resumed.status_code == 200
        assert resumed.json()["attempt_id"] == attempt_id
        assert resumed.json()["resumed"] is True

        saved = client.post(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": published["mcq_id"], "answer": {"selected_option": "A"}, "time_spent_seconds": 12},
            headers=student_headers,
        )
        assert saved.status_code == 200
        assert saved.json()["auto_grading"]["is_correct"] is True

        client.post(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": published["essay_id"], "answer": {"text": "It has the Eiffel tower."}},
            headers=student_headers,
        )

        current = client.get(f"/assessments/{published['id']}/attempt", headers=student_headers).json()
        assert current["status"] == "in_progress"
        essay = next(q for q in current["questions"] if q["question_id"] == published["essay_id"])
        assert essay["response"]["answer"]["text"] == "It has the Eiffel tower."

        submitted = client.post(f"/attempts/{attempt_id}/submit", headers=student_headers)
        assert submitted.status_code == 200
        result = submitted.json()["result"]
        assert result["marks_obtained"] == 5
        assert result["percentage"] == 50
        assert result["grade"] == "D"
        assert result["passed"] is True

        again = client.post(f"/attempts/{attempt_id}/submit", headers=student_headers)
        assert again.status_code == 409
        assert again.json()["code"] == "already_submitted"
        assert again.json()["data"]["percentage"] == 50

        late_save = client.post(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": published["mcq_id"], "answer": {"selected_option": "B"}},
            headers=student_headers,
        )
        assert late_save.status_code == 409
        assert late_save.json()["code"] == "not_active"

        graded = client.post(
            f"/attempts/{attempt_id}/responses/{published['essay_id']}/grade",
            json={"marks": 5, "feedback": "Well described"},
            headers=teacher_headers,
        )
        assert graded.status_code == 200
        assert graded.json()["status"] == "graded"
        assert graded.json()["percentage"] == 100

        results = client.get(f"/assessments/{published['id']}/results", headers=student_headers)
        assert results.status_code == 200
        best = results.json()["best_attempt"]
        assert best["grade"] == "A+"
        essay_detail = next(q for q in best["questions"] if q["question_id"] == published["essay_id"])
        assert essay_detail["feedback"] == "Well described"

        stats = client.get(f"/assessments/{published['id']}/statistics", headers=teacher_headers).json()
        assert stats["total_started"] == 1
        assert stats["total_completed"] == 1
        assert stats["highest_score"] == 100

    def test_pause_and_resume(self, client, published, student_headers):
        attempt_id = client.post(f"/assessments/{published['id']}/start", headers=student_headers).json()["attempt_id"]

        paused = client.post(f"/attempts/{attempt_id}/pause", headers=student_headers)
        assert paused.json()["status"] == "paused"
        bad = client.post(f"/attempts/{attempt_id}/pause", headers=student_headers)
        assert bad.status_code == 409
        assert bad.json()["code"] == "invalid_state"
        resumed = client.post(f"/attempts/{attempt_id}/resume", headers=student_headers)
        assert resumed.json()["status"] == "in_progress"

    def test_invalid_answer_shape(self, client, published, student_headers):
        attempt_id = client.post(f"/assessments/{published['id']}/start", headers=student_headers).json()["attempt_id"]
        response = client.post(
            f"/attempts/{attempt_id}/answers",
            json={"question_id": published["mcq_id"], "answer": {"text": "A"}},
            headers=student_headers,
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_failed"

    def test_uninvited_student(self, client, published):
        response = client.post(f"/assessments/{published['id']}/start", headers=as_user(999, "student"))
        assert response.status_code == 403
        assert response.json()["code"] == "not_authorized"

    def test_unknown_assessment(self, client, student_headers):
        response = client.post("/assessments/424242/start", headers=student_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestTeacherViews:
    def test_security_events_roundtrip(self, client, published, student_headers, teacher_headers):
        attempt_id = client.post(f"/assessments/{published['id']}/start", headers=student_headers).json()["attempt_id"]
        recorded = client.post(
            f"/attempts/{attempt_id}/security-events",
            json={"event_type": "tab_switch", "severity": "low", "details": {"count": 1}},
            headers=student_headers,
        )
        assert recorded.status_code == 201

        listing = client.get(f"/attempts/{attempt_id}/security-events", headers=teacher_headers).json()
        assert listing["summary"]["total"] == 1
        assert listing["events"][0]["event_type"] == "tab_switch"

    def test_other_teacher_cannot_manage(self, client, published):
        response = client.get(
            f"/assessments/{published['id']}/statistics", headers=as_user(OTHER_TEACHER_ID, "teacher")
        )
        assert response.status_code == 403

    def test_manual_release_route(self, client, published, teacher_headers):
        response = client.post(f"/assessments/{published['id']}/release-results", headers=teacher_headers)
        assert response.json()["results_released"] is True

    def test_invite_participants(self, client, published, teacher_headers):
        response = client.post(
            f"/assessments/{published['id']}/participants",
            json={"student_ids": [STUDENT_ID, 300]},
            headers=teacher_headers,
        )
        assert response.json()["added"] == 1

    def test_submitted_attempts_listing(self, client, published, student_headers, teacher_headers):
        attempt_id = client.post(f"/assessments/{published['id']}/start", headers=student_headers).json()["attempt_id"]
        client.post(f"/attempts/{attempt_id}/submit", headers=student_headers)
        listing = client.get(f"/assessments/{published['id']}/attempts", headers=as_user(TEACHER_ID, "teacher"))
        assert listing.json()["attempts"][0]["student_id"] == STUDENT_ID

    def test_status_lifecycle_route(self, client, published, teacher_headers):
        done = client.post(
            f"/assessments/{published['id']}/status", json={"status": "completed"}, headers=teacher_headers
        )
        assert done.json()["status"] == "completed"

        backwards = client.post(
            f"/assessments/{published['id']}/status", json={"status": "draft"}, headers=teacher_headers
        )
        assert backwards.status_code == 409
        assert backwards.json()["code"] == "invalid_state"

    def test_assessment_view_reports_participant_progress(self, client, published, student_headers, teacher_headers):
        client.post(f"/assessments/{published['id']}/start", headers=student_headers)
        view = client.get(f"/assessments/{published['id']}", headers=teacher_headers).json()
        progress = view["participants"][0]
        assert progress["student_id"] == STUDENT_ID
        assert progress["status"] == "started"
        assert progress["attempts"] == 1
