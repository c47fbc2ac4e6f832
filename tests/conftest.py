from datetime import datetime, timedelta
import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

from exam_engine import models  # noqa: F401
from exam_engine.models import Assessment, Question, QuestionType
from exam_engine.schemas import AssessmentCreate, QuestionCreate
from exam_engine.services import catalog

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# StaticPool keeps every connection on the same in-memory database
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TEACHER_ID = 100
OTHER_TEACHER_ID = 101
STUDENT_ID = 200
OTHER_STUDENT_ID = 201

# Fixed clock for service-level tests
NOW = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data after each test."""
    yield

    # FK-safe order
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM securityevent"))
        session.exec(text("DELETE FROM attemptresponse"))
        session.exec(text("DELETE FROM attempt"))
        session.exec(text("DELETE FROM gradeband"))
        session.exec(text("DELETE FROM assessmentparticipant"))
        session.exec(text("DELETE FROM assessmentquestion"))
        session.exec(text("DELETE FROM assessment"))
        session.exec(text("DELETE FROM question"))
        session.commit()


@pytest.fixture
def session():
    """Provide a database session for tests."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def rng():
    return random.Random(1234)


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================

from exam_engine.database import get_session  # noqa: E402
from exam_engine.main import app  # noqa: E402


@pytest.fixture
def client():
    """Test client bound to the in-memory database."""

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    # Not used as a context manager, so startup table creation is skipped
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user_id: int, role: str) -> dict[str, str]:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


@pytest.fixture
def teacher_headers():
    return as_user(TEACHER_ID, "teacher")


@pytest.fixture
def student_headers():
    return as_user(STUDENT_ID, "student")


# ============================================================================
# ENTITY FIXTURES
# ============================================================================


def _mcq(text_="What is 2 + 2?", correct="B", marks=4.0):
    return QuestionCreate(
        type=QuestionType.MCQ,
        question_text=text_,
        options=[
            {"key": "A", "text": "3"},
            {"key": "B", "text": "4"},
            {"key": "C", "text": "5"},
            {"key": "D", "text": "22"},
        ],
        correct_answer=correct,
        marks=marks,
        explanation="Basic addition.",
    )


@pytest.fixture
def make_question():
    """Factory creating bank questions; returns fresh ``Question`` objects."""

    def factory(payload: QuestionCreate = None, **kwargs) -> Question:
        payload = payload or _mcq(**kwargs)
        with Session(test_engine) as session:
            question = catalog.create_question(session, payload, created_by=TEACHER_ID)
            question_id = question.id
        with Session(test_engine) as session:
            return session.get(Question, question_id)

    return factory


@pytest.fixture
def mcq_questions(make_question):
    """Four MCQs worth 4 marks each (correct option B)."""
    return [make_question(text_=f"MCQ question {i + 1}?") for i in range(4)]


@pytest.fixture
def make_assessment():
    """Factory creating published assessments scheduled around ``NOW``.

    Keyword arguments override fields of ``AssessmentCreate``; ``schedule``
    entries are merged into the default schedule.
    """

    def factory(question_list, publish=True, now=NOW, schedule=None, **overrides) -> Assessment:
        base_schedule = {
            "start_time": now - timedelta(hours=1),
            "end_time": now + timedelta(hours=3),
            "grace_period_minutes": 5,
        }
        base_schedule.update(schedule or {})
        data = {
            "title": "Unit Test Assessment",
            "duration_minutes": 30,
            "schedule": base_schedule,
            "questions": [{"question_id": q.id} for q in question_list],
            "participants": [STUDENT_ID],
        }
        data.update(overrides)
        with Session(test_engine) as session:
            assessment = catalog.create_assessment(session, AssessmentCreate(**data), created_by=TEACHER_ID)
            if publish:
                catalog.publish_assessment(session, assessment)
            assessment_id = assessment.id
        with Session(test_engine) as session:
            return session.get(Assessment, assessment_id)

    return factory


@pytest.fixture
def mcq_assessment(make_assessment, mcq_questions):
    """Published 30-minute assessment of four 4-mark MCQs, open around ``NOW``."""
    return make_assessment(mcq_questions)
