"""Deadline arithmetic and expiry enforcement."""

from datetime import timedelta

import pytest

from conftest import NOW, STUDENT_ID
from exam_engine.exceptions import AttemptExpired
from exam_engine.models import Assessment, Attempt, AttemptStatus, QuestionType, SubmissionMethod
from exam_engine.schemas import QuestionCreate, SaveAnswerIn
from exam_engine.services import answers, sessions, timing


def _assessment(**overrides):
    data = dict(
        title="Clock",
        created_by=1,
        duration_minutes=30,
        start_time=NOW - timedelta(hours=1),
        end_time=NOW + timedelta(hours=3),
        grace_period_minutes=5,
        late_submission_allowed=False,
        total_marks=10,
        passing_marks=4,
    )
    data.update(overrides)
    return Assessment(**data)


def _attempt(started_at=NOW):
    return Attempt(assessment_id=1, student_id=STUDENT_ID, attempt_number=1, started_at=started_at)


class TestDeadline:
    def test_deadline_is_start_plus_duration(self):
        assert timing.deadline_for(_attempt(), _assessment()) == NOW + timedelta(minutes=30)

    def test_schedule_end_caps_the_deadline(self):
        assessment = _assessment(end_time=NOW + timedelta(minutes=10))
        assert timing.deadline_for(_attempt(), assessment) == NOW + timedelta(minutes=15)

    def test_late_submission_lifts_the_cap(self):
        assessment = _assessment(end_time=NOW + timedelta(minutes=10), late_submission_allowed=True)
        assert timing.deadline_for(_attempt(), assessment) == NOW + timedelta(minutes=30)


class TestRemainingTime:
    @pytest.mark.parametrize(
        "elapsed, remaining",
        [
            (timedelta(0), 30),
            (timedelta(seconds=59), 30),
            (timedelta(minutes=10, seconds=30), 20),
            (timedelta(minutes=29, seconds=59), 1),
            (timedelta(minutes=30), 0),
            (timedelta(minutes=45), 0),
        ],
    )
    def test_remaining_is_duration_minus_floored_elapsed(self, elapsed, remaining):
        assert timing.minutes_remaining(_attempt(), _assessment(), NOW + elapsed) == remaining

    def test_expired_exactly_at_deadline(self):
        assert not timing.is_expired(_attempt(), _assessment(), NOW + timedelta(minutes=29, seconds=59))
        assert timing.is_expired(_attempt(), _assessment(), NOW + timedelta(minutes=30))

    def test_seconds_remaining_never_negative(self):
        assert timing.seconds_remaining(_attempt(), _assessment(), NOW + timedelta(hours=2)) == 0


class TestExpiryEnforcement:
    def test_save_after_deadline_auto_submits(self, session, make_question, make_assessment):
        """Acceptance: a ten-minute attempt touched after eleven minutes is auto-submitted with zero marks."""
        question = make_question(marks=10)
        assessment = make_assessment(
            [question],
            duration_minutes=10,
            negative_marking={"enabled": True, "percentage": 25},
        )
        attempt, _ = sessions.start_attempt(session, assessment.id, STUDENT_ID, now=NOW)

        with pytest.raises(AttemptExpired):
            answers.save_answer(
                session,
                attempt.id,
                STUDENT_ID,
                SaveAnswerIn(question_id=question.id, answer={"selected_option": "B"}),
                now=NOW + timedelta(minutes=11),
            )

        current = sessions.get_current_attempt(session, assessment.id, STUDENT_ID, now=NOW + timedelta(minutes=12))
        assert current.id == attempt.id
        assert current.status == AttemptStatus.AUTO_SUBMITTED
        assert current.submission_method == SubmissionMethod.TIME_EXPIRED
        assert current.marks_obtained == 0
        assert current.time_taken == 10
        assert current.live is None

    def test_read_of_overdue_attempt_auto_submits(self, session, mcq_assessment):
        attempt, _ = sessions.start_attempt(session, mcq_assessment.id, STUDENT_ID, now=NOW)
        current = sessions.get_current_attempt(session, mcq_assessment.id, STUDENT_ID, now=NOW + timedelta(minutes=40))
        assert current.status == AttemptStatus.AUTO_SUBMITTED
        assert current.time_taken == 30
        assert current.time_remaining == 0

    def test_read_before_deadline_refreshes_remaining_time(self, session, mcq_assessment):
        sessions.start_attempt(session, mcq_assessment.id, STUDENT_ID, now=NOW)
        current = sessions.get_current_attempt(session, mcq_assessment.id, STUDENT_ID, now=NOW + timedelta(minutes=12))
        assert current.status == AttemptStatus.STARTED
        assert current.time_remaining == 18

    def test_terminal_attempt_is_left_alone(self, session, mcq_assessment):
        attempt, _ = sessions.start_attempt(session, mcq_assessment.id, STUDENT_ID, now=NOW)
        assessment = session.get(Assessment, mcq_assessment.id)
        assert timing.enforce_expiry(session, attempt, assessment, NOW + timedelta(minutes=31)) is True
        assert timing.enforce_expiry(session, attempt, assessment, NOW + timedelta(minutes=60)) is False

    def test_subjective_answers_survive_expiry(self, session, make_question, make_assessment):
        essay = make_question(QuestionCreate(type=QuestionType.ESSAY, question_text="Discuss", marks=10))
        assessment = make_assessment([essay], duration_minutes=10)
        attempt, _ = sessions.start_attempt(session, assessment.id, STUDENT_ID, now=NOW)
        answers.save_answer(
            session,
            attempt.id,
            STUDENT_ID,
            SaveAnswerIn(question_id=essay.id, answer={"text": "My essay"}),
            now=NOW + timedelta(minutes=5),
        )
        current = sessions.get_current_attempt(session, assessment.id, STUDENT_ID, now=NOW + timedelta(minutes=20))
        assert current.status == AttemptStatus.AUTO_SUBMITTED
        (response,) = sessions.list_responses(session, current.id)
        assert response.answer["text"] == "My essay"
        assert response.marks_awarded is None
