import pytest

from exampro.models.exam import Question
from exampro.services.scoring import (
    get_incorrect_questions, grade_answers, is_passed, score,
)


def _question(qid, correct="A", points=1):
    return Question(
        id=qid, exam_id="exam-1", question_text=f"Q{qid}",
        option_a="a", option_b="b", option_c="c", option_d="d",
        correct_answer=correct, points=points,
    )


def test_empty_question_set_scores_zero_without_dividing():
    result = score([], {})
    assert result.correct_count == 0
    assert result.total == 0
    assert result.percentage == 0.0


def test_percentage_is_correct_over_total():
    questions = [_question("1", "A"), _question("2", "B"), _question("3", "C"), _question("4", "D")]
    result = score(questions, {"1": "A", "2": "B", "3": "A"})
    assert result.correct_count == 2
    assert result.total == 4
    assert result.percentage == pytest.approx(50.0)


def test_unanswered_questions_count_as_incorrect_and_keep_denominator():
    questions = [_question("1", "A"), _question("2", "B")]
    result = score(questions, {"1": "A"})
    assert result.total == 2
    assert result.correct_count == 1
    assert result.percentage == pytest.approx(50.0)


def test_answers_for_unknown_questions_are_ignored():
    questions = [_question("1", "A")]
    result = score(questions, {"1": "A", "ghost": "A"})
    assert result.correct_count == 1
    assert result.correct_count <= result.total


def test_letter_match_is_exact():
    questions = [_question("1", "A")]
    assert score(questions, {"1": "a"}).correct_count == 0


def test_raw_score_sums_points_but_percentage_does_not():
    questions = [_question("1", "A", points=3), _question("2", "B", points=1)]
    result = score(questions, {"1": "A"})
    assert result.raw_score == 3
    assert result.percentage == pytest.approx(50.0)


def test_grade_answers_emits_one_row_per_question():
    questions = [_question("1", "A"), _question("2", "B")]
    rows = grade_answers("attempt-1", questions, {"2": "B"})
    assert [r.question_id for r in rows] == ["1", "2"]
    assert rows[0].selected_answer is None
    assert rows[0].is_correct is False
    assert rows[1].selected_answer == "B"
    assert rows[1].is_correct is True
    assert all(r.attempt_id == "attempt-1" for r in rows)


def test_incorrect_questions_include_unanswered():
    questions = [_question("1", "A"), _question("2", "B"), _question("3", "C")]
    incorrect = get_incorrect_questions(questions, {"1": "A", "2": "C"})
    assert [q.id for q in incorrect] == ["2", "3"]


@pytest.mark.parametrize("percentage,passing,expected", [
    (70.0, 70, True),
    (69.99, 70, False),
    (100.0, 70, True),
    (None, 0, True),
    (None, 1, False),
])
def test_is_passed(percentage, passing, expected):
    assert is_passed(percentage, passing) is expected


def test_question_rejects_answer_pointing_to_empty_option():
    with pytest.raises(ValueError):
        Question(
            exam_id="e", question_text="T/F", option_a="True", option_b="False",
            correct_answer="C",
        )


def test_question_normalizes_correct_answer_case():
    q = Question(exam_id="e", question_text="T/F", option_a="True", option_b="False", correct_answer=" b ")
    assert q.correct_answer == "B"
    assert q.available_letters() == ["A", "B"]
