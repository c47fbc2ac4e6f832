"""SQLModel models for the assessment-taking engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from exam_engine.utils import utcnow


class QuestionType(str, Enum):
    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    FILL_BLANKS = "fill_blanks"
    SHORT_ANSWER = "short_answer"
    LONG_ANSWER = "long_answer"
    ESSAY = "essay"
    MEDIA = "media"


CHOICE_TYPES = frozenset({QuestionType.MCQ, QuestionType.TRUE_FALSE})
OBJECTIVE_TYPES = CHOICE_TYPES | {QuestionType.FILL_BLANKS}
SUBJECTIVE_TYPES = frozenset(set(QuestionType) - OBJECTIVE_TYPES)


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"


# Students can only reach assessments in one of these states
OPEN_ASSESSMENT_STATUSES = frozenset({AssessmentStatus.PUBLISHED, AssessmentStatus.ACTIVE})


class ParticipantStatus(str, Enum):
    INVITED = "invited"
    STARTED = "started"
    COMPLETED = "completed"
    GRADED = "graded"


class ResultVisibility(str, Enum):
    IMMEDIATELY = "immediately"
    AFTER_DEADLINE = "after_deadline"
    AFTER_ALL_COMPLETE = "after_all_complete"
    MANUAL = "manual"


class AttemptStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"
    GRADED = "graded"


LIVE_STATUSES = frozenset({AttemptStatus.STARTED, AttemptStatus.IN_PROGRESS, AttemptStatus.PAUSED})
TERMINAL_STATUSES = frozenset({AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED, AttemptStatus.GRADED})


class SubmissionMethod(str, Enum):
    MANUAL = "manual_submit"
    TIME_EXPIRED = "time_expired"


class SecurityEventType(str, Enum):
    TAB_SWITCH = "tab_switch"
    WINDOW_BLUR = "window_blur"
    COPY_ATTEMPT = "copy_attempt"
    PASTE_ATTEMPT = "paste_attempt"
    RIGHT_CLICK = "right_click"
    DEV_TOOLS = "dev_tools"
    FULLSCREEN_EXIT = "fullscreen_exit"
    BROWSER_BACK = "browser_back"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    WEBCAM_VIOLATION = "webcam_violation"
    FACE_NOT_DETECTED = "face_not_detected"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


# ===================== QUESTION REFERENCE =====================


class Question(SQLModel, table=True):
    """A bank question. Authored elsewhere; read-only for attempts."""

    id: Optional[int] = Field(default=None, primary_key=True)
    type: QuestionType
    question_text: str
    # [{"key": "A", "text": "..."}] for choice types, empty otherwise
    options: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    # str for choice types, list[str] for fill-in-blank, None for subjective types
    correct_answer: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))
    marks: float = Field(default=1)
    explanation: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


# ===================== ASSESSMENT DEFINITION =====================


class Assessment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    created_by: int
    status: AssessmentStatus = Field(default=AssessmentStatus.DRAFT)

    # Configuration
    duration_minutes: int
    shuffle_questions: bool = Field(default=False)
    shuffle_options: bool = Field(default=False)
    max_attempts: int = Field(default=1)
    attempt_delay_minutes: int = Field(default=0)
    negative_marking_enabled: bool = Field(default=False)
    negative_marking_percentage: float = Field(default=25)
    partial_marking: bool = Field(default=True)
    result_visibility: ResultVisibility = Field(default=ResultVisibility.IMMEDIATELY)
    show_correct_answers: bool = Field(default=True)
    show_explanations: bool = Field(default=True)
    results_released: bool = Field(default=False)
    open_access: bool = Field(default=False)

    # Schedule
    start_time: datetime
    end_time: datetime
    grace_period_minutes: int = Field(default=5)
    late_submission_allowed: bool = Field(default=False)
    late_penalty_percentage: float = Field(default=10)

    # Grading
    total_marks: float
    passing_marks: float

    # Running statistics, only ever changed by single UPDATE statements
    total_started: int = Field(default=0)
    total_completed: int = Field(default=0)
    pass_count: int = Field(default=0)
    average_score: float = Field(default=0)
    average_time: float = Field(default=0)
    highest_score: Optional[float] = None
    lowest_score: Optional[float] = None
    pass_rate: float = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None


class AssessmentQuestion(SQLModel, table=True):
    """A question slot inside an assessment."""

    __table_args__ = (
        UniqueConstraint("assessment_id", "question_id", name="uq_assessment_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id")
    question_id: int = Field(foreign_key="question.id")
    marks: float
    position: int
    is_optional: bool = Field(default=False)
    time_limit_minutes: int = Field(default=0)  # 0 means use the assessment duration


class AssessmentParticipant(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("assessment_id", "student_id", name="uq_assessment_participant"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id")
    student_id: int
    invited_at: datetime = Field(default_factory=utcnow)

    # Progress, only ever changed by single UPDATE statements
    status: ParticipantStatus = Field(default=ParticipantStatus.INVITED)
    attempts: int = Field(default=0)
    last_attempt_at: Optional[datetime] = None
    score: Optional[int] = None  # percentage of the latest finished attempt
    grade: Optional[str] = None


class GradeBand(SQLModel, table=True):
    """One row of an assessment's grading scale, checked in ``position`` order."""

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id")
    label: str
    min_percentage: int
    max_percentage: int
    position: int
    description: Optional[str] = None


# ===================== ATTEMPTS =====================


class Attempt(SQLModel, table=True):
    """One student's timed pass through an assessment."""

    __table_args__ = (
        UniqueConstraint("assessment_id", "student_id", "attempt_number", name="uq_attempt_number"),
        # live is True while the attempt is open and NULL afterwards; NULLs never
        # collide, so this admits at most one open attempt per student.
        UniqueConstraint("assessment_id", "student_id", "live", name="uq_attempt_live"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id", index=True)
    student_id: int = Field(index=True)
    attempt_number: int
    status: AttemptStatus = Field(default=AttemptStatus.STARTED)
    live: Optional[bool] = Field(default=True)

    started_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    time_remaining: int = Field(default=0)  # minutes
    time_taken: Optional[int] = None  # minutes, set at submission
    submission_method: Optional[SubmissionMethod] = None

    # Scoring summary
    total_marks: float = Field(default=0)
    marks_obtained: float = Field(default=0)
    negative_marks: float = Field(default=0)
    percentage: int = Field(default=0)
    grade: Optional[str] = None
    breakdown: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    is_late: bool = Field(default=False)
    late_penalty: float = Field(default=0)

    # Request context captured at start
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    submission_source: str = Field(default="web")  # web | mobile

    updated_at: datetime = Field(default_factory=utcnow)


class AttemptResponse(SQLModel, table=True):
    """The answer slot for one question of an attempt's snapshot."""

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_response_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="attempt.id", index=True)
    question_id: int = Field(foreign_key="question.id")
    position: int
    # Cached from the question and assessment at start time
    question_type: QuestionType
    max_marks: float
    option_order: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    time_limit_minutes: int = Field(default=0)
    is_optional: bool = Field(default=False)

    answer: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    time_spent_seconds: int = Field(default=0)
    is_answered: bool = Field(default=False)
    is_marked_for_review: bool = Field(default=False)
    saved_at: Optional[datetime] = None

    # Auto-grading result; marks_awarded keeps its sign for aggregation
    is_correct: Optional[bool] = None
    marks_awarded: Optional[float] = None

    # Manual grading override
    manual_marks: Optional[float] = None
    grader_feedback: Optional[str] = None
    graded_by: Optional[int] = None
    graded_at: Optional[datetime] = None

    # Display value, never negative
    final_marks: float = Field(default=0)


class SecurityEvent(SQLModel, table=True):
    """Append-only anomaly log entry attached to an attempt."""

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="attempt.id", index=True)
    event_type: SecurityEventType
    severity: Severity = Field(default=Severity.MEDIUM)
    timestamp: datetime = Field(default_factory=utcnow)
    details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
