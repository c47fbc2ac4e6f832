"""Auto-grading rules for objective question types."""

import pytest

from exam_engine.exceptions import ValidationFailed
from exam_engine.models import Assessment, Question, QuestionType
from exam_engine.schemas import ChoiceAnswer, FillBlanksAnswer, TextAnswer
from exam_engine.services.grading import (
    auto_grade,
    display_marks,
    grade_choice,
    grade_fill_blanks,
    parse_answer,
)


class TestChoiceGrading:
    def test_correct_option_earns_full_marks(self):
        outcome = grade_choice("B", "B", 5)
        assert outcome.is_correct is True
        assert outcome.marks_awarded == 5

    def test_wrong_option_without_negative_marking_earns_zero(self):
        outcome = grade_choice("A", "B", 5)
        assert outcome.is_correct is False
        assert outcome.marks_awarded == 0

    def test_wrong_option_with_negative_marking_is_penalized(self):
        outcome = grade_choice("A", "B", 5, negative_marking=True, negative_percentage=50)
        assert outcome.is_correct is False
        assert outcome.marks_awarded == pytest.approx(-2.5)

    def test_penalty_is_clamped_only_for_display(self):
        outcome = grade_choice("A", "B", 4, negative_marking=True, negative_percentage=25)
        assert outcome.marks_awarded == pytest.approx(-1.0)
        assert display_marks(outcome.marks_awarded) == 0


class TestFillBlanksGrading:
    CORRECT = ["Paris", "Rome", "Berlin", "Madrid"]

    def test_three_of_four_blanks_earn_proportional_marks(self):
        """Acceptance: comparison ignores case and surrounding whitespace."""
        outcome = grade_fill_blanks(["  paris", "ROME ", "berlin", "Lisbon"], self.CORRECT, 8)
        assert outcome.is_correct is False
        assert outcome.marks_awarded == pytest.approx(8 * 0.75)
        assert outcome.correct_blanks == 3
        assert outcome.total_blanks == 4

    def test_all_blanks_correct(self):
        outcome = grade_fill_blanks(["paris", "rome", "berlin", "madrid"], self.CORRECT, 8)
        assert outcome.is_correct is True
        assert outcome.marks_awarded == 8

    def test_without_partial_marking_any_miss_scores_zero(self):
        outcome = grade_fill_blanks(["paris", "rome", "berlin", "x"], self.CORRECT, 8, partial_marking=False)
        assert outcome.is_correct is False
        assert outcome.marks_awarded == 0

    def test_missing_blanks_count_as_wrong(self):
        outcome = grade_fill_blanks(["paris"], self.CORRECT, 8)
        assert outcome.correct_blanks == 1
        assert outcome.marks_awarded == pytest.approx(2)


class TestParseAnswer:
    def test_choice_payload(self):
        answer = parse_answer(QuestionType.MCQ, {"selected_option": "C"})
        assert isinstance(answer, ChoiceAnswer)
        assert answer.selected_option == "C"

    def test_fill_blanks_payload(self):
        answer = parse_answer(QuestionType.FILL_BLANKS, {"blanks": ["a", "b"]})
        assert isinstance(answer, FillBlanksAnswer)

    def test_text_payload_is_stripped_of_html(self):
        answer = parse_answer(QuestionType.ESSAY, {"text": "<b>bold</b> answer"})
        assert isinstance(answer, TextAnswer)
        assert answer.text == "bold answer"

    def test_payload_of_wrong_shape_is_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_answer(QuestionType.MCQ, {"text": "free text for a choice question"})
        assert exc_info.value.data["errors"]

    def test_empty_blank_list_is_rejected(self):
        with pytest.raises(ValidationFailed):
            parse_answer(QuestionType.FILL_BLANKS, {"blanks": []})


class TestAutoGrade:
    @pytest.fixture
    def policy(self):
        return Assessment(negative_marking_enabled=True, negative_marking_percentage=50, partial_marking=False)

    def test_choice_question_graded_from_parsed_answer(self, policy):
        question = Question(type=QuestionType.MCQ, question_text="Pick", correct_answer="B")
        answer = parse_answer(QuestionType.MCQ, {"selected_option": "C"})
        outcome = auto_grade(question, answer, 4, policy)
        assert outcome.is_correct is False
        assert outcome.marks_awarded == pytest.approx(-2)

    def test_fill_blanks_follow_assessment_partial_policy(self, policy):
        question = Question(type=QuestionType.FILL_BLANKS, question_text="Fill", correct_answer=["a", "b"])
        answer = parse_answer(QuestionType.FILL_BLANKS, {"blanks": ["A ", "x"]})
        outcome = auto_grade(question, answer, 6, policy)
        assert outcome.correct_blanks == 1
        assert outcome.marks_awarded == 0

    def test_subjective_question_waits_for_a_grader(self, policy):
        question = Question(type=QuestionType.ESSAY, question_text="Discuss")
        outcome = auto_grade(question, parse_answer(QuestionType.ESSAY, {"text": "Essay"}), 5, policy)
        assert outcome.is_correct is None
        assert outcome.marks_awarded is None
