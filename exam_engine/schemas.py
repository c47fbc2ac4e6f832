"""Request payloads and the tagged answer variants."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from exam_engine.models import AssessmentStatus, QuestionType, ResultVisibility, SecurityEventType, Severity

ANSWER_TEXT_MAX_LENGTH = 20000


# --- Answer payloads, one shape per family of question types ---


class ChoiceAnswer(BaseModel):
    kind: Literal["choice"] = "choice"
    selected_option: str = Field(min_length=1)


class FillBlanksAnswer(BaseModel):
    kind: Literal["fill_blanks"] = "fill_blanks"
    blanks: list[str] = Field(min_length=1)


class TextAnswer(BaseModel):
    kind: Literal["text"] = "text"
    text: str = Field(max_length=ANSWER_TEXT_MAX_LENGTH)


class MediaAnswer(BaseModel):
    kind: Literal["media"] = "media"
    urls: list[str] = Field(min_length=1)


ANSWER_MODEL_BY_TYPE: dict[QuestionType, type[BaseModel]] = {
    QuestionType.MCQ: ChoiceAnswer,
    QuestionType.TRUE_FALSE: ChoiceAnswer,
    QuestionType.FILL_BLANKS: FillBlanksAnswer,
    QuestionType.SHORT_ANSWER: TextAnswer,
    QuestionType.LONG_ANSWER: TextAnswer,
    QuestionType.ESSAY: TextAnswer,
    QuestionType.MEDIA: MediaAnswer,
}


# --- Authoring ---


class OptionIn(BaseModel):
    key: str = Field(min_length=1, max_length=20)
    text: str = Field(min_length=1, max_length=1000)


class QuestionCreate(BaseModel):
    type: QuestionType
    question_text: str = Field(min_length=1, max_length=5000)
    options: list[OptionIn] = Field(default_factory=list)
    correct_answer: Optional[Union[str, list[str]]] = None
    marks: float = Field(default=1, gt=0, le=100)
    explanation: Optional[str] = None


class AssessmentQuestionIn(BaseModel):
    question_id: int
    marks: Optional[float] = Field(default=None, gt=0, le=100)
    is_optional: bool = False
    time_limit_minutes: int = Field(default=0, ge=0)


class GradeBandIn(BaseModel):
    label: str = Field(min_length=1, max_length=10)
    min: int = Field(ge=0, le=100)
    max: int = Field(ge=0, le=100)
    description: Optional[str] = None


class NegativeMarkingIn(BaseModel):
    enabled: bool = False
    percentage: float = Field(default=25, ge=0, le=100)


class ScheduleIn(BaseModel):
    start_time: datetime
    end_time: datetime
    grace_period_minutes: int = Field(default=5, ge=0, le=60)
    late_submission_allowed: bool = False
    late_penalty_percentage: float = Field(default=10, ge=0, le=100)

    @field_validator("start_time", "end_time")
    @classmethod
    def to_naive_utc(cls, value: datetime) -> datetime:
        # Stored timestamps are naive UTC
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class AssessmentCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=480)
    shuffle_questions: bool = False
    shuffle_options: bool = False
    max_attempts: int = Field(default=1, ge=1, le=10)
    attempt_delay_minutes: int = Field(default=0, ge=0)
    negative_marking: NegativeMarkingIn = Field(default_factory=NegativeMarkingIn)
    partial_marking: bool = True
    result_visibility: ResultVisibility = ResultVisibility.IMMEDIATELY
    show_correct_answers: bool = True
    show_explanations: bool = True
    open_access: bool = False
    schedule: ScheduleIn
    passing_marks: Optional[float] = Field(default=None, ge=0)
    grading_scale: Optional[list[GradeBandIn]] = None
    questions: list[AssessmentQuestionIn] = Field(min_length=1)
    participants: list[int] = Field(default_factory=list)


class ParticipantsIn(BaseModel):
    student_ids: list[int] = Field(min_length=1)


class AssessmentStatusIn(BaseModel):
    status: AssessmentStatus


# --- Attempt taking ---


class SaveAnswerIn(BaseModel):
    question_id: int
    answer: dict[str, Any]
    time_spent_seconds: int = Field(default=0, ge=0)
    is_marked_for_review: bool = False


class SecurityEventIn(BaseModel):
    event_type: SecurityEventType
    details: Optional[dict[str, Any]] = None
    severity: Severity = Severity.MEDIUM


class ManualGradeIn(BaseModel):
    marks: float = Field(ge=0)
    feedback: Optional[str] = Field(default=None, max_length=1000)
