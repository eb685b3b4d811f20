from datetime import date, datetime

import pytest

from conftest import run, seed_world
from exampro.models.exam import Exam, Passage, Question
from exampro.services.errors import AttemptNotFound
from exampro.services.exam_session import ExamSession
from exampro.services.results import (
    ResultRow, exam_results_rows, export_filename, export_results_csv,
    format_date, format_time, list_dashboard, load_review,
)


async def _take_exam(world, account, answers_by_index, ticks=0):
    session = await ExamSession(world.backend, account, world.exam.id, run_clock=False).start()
    for index, letter in answers_by_index.items():
        session.navigate(index)
        session.select_answer(letter)
    for _ in range(ticks):
        session.tick()
    return await session.submit()


def test_review_joins_answers_with_questions(world):
    result = run(_take_exam(world, world.student, {0: "B"}, ticks=5))

    review = run(load_review(world.backend, world.student, result.attempt.id))

    assert [item.question.id for item in review.items] == [q.id for q in world.questions]
    assert review.items[0].selected_answer == "B"
    assert review.items[0].is_correct is True
    assert review.items[1].selected_answer is None
    assert review.items[1].is_correct is False
    assert review.correct_count == 1
    assert review.total == 2
    assert review.percentage == pytest.approx(50.0)
    assert review.passed is False
    assert review.attempt.time_taken_seconds == 5


def test_review_includes_passage(backend):
    world = run(seed_world(backend))
    passage = run(backend.insert_passage(Passage(exam_id=world.exam.id, title="Story", content="Once...")))
    run(backend.insert_questions([Question(
        exam_id=world.exam.id, passage_id=passage.id, question_text="Who?",
        option_a="Me", option_b="You", correct_answer="A", order_index=2,
    )]))

    result = run(_take_exam(world, world.student, {}))
    review = run(load_review(backend, world.student, result.attempt.id))

    assert review.items[-1].passage.title == "Story"
    assert review.items[0].passage is None


def test_review_is_private_to_owner(world):
    result = run(_take_exam(world, world.student, {0: "B", 1: "B"}))
    with pytest.raises(AttemptNotFound):
        run(load_review(world.backend, world.other, result.attempt.id))


def test_review_requires_completed_attempt(world):
    session = run(ExamSession(world.backend, world.student, world.exam.id, run_clock=False).start())
    with pytest.raises(AttemptNotFound):
        run(load_review(world.backend, world.student, session.attempt.id))


def test_dashboard_marks_completed_exams(world):
    run(world.backend.insert_exam(Exam(title="Draft", duration_minutes=10, is_published=False)))

    entries = run(list_dashboard(world.backend, world.student))
    assert [e.exam.title for e in entries] == ["Reading Basics"]
    assert entries[0].completed is False
    assert entries[0].passed is None

    run(_take_exam(world, world.student, {0: "B", 1: "B"}))
    entries = run(list_dashboard(world.backend, world.student))
    assert entries[0].completed is True
    assert entries[0].passed is True


def test_dashboard_filters_by_grade_and_subject(world):
    backend = world.backend
    for title, grade, subject in [
        ("Third Grade Math", "3prp", "math"),
        ("First Grade Science", "1sec", "science"),
        ("Open Quiz", "general", "general"),
    ]:
        run(backend.insert_exam(Exam(
            title=title, duration_minutes=10, grade=grade, subject=subject, is_published=True,
        )))

    def titles(account, **filters):
        return {e.exam.title for e in run(list_dashboard(backend, account, **filters))}

    # 기본값은 학생 본인의 학년/반. 학년이 없는 시험과 general은 항상 보인다
    assert titles(world.student) == {"Reading Basics", "Third Grade Math", "Open Quiz"}
    assert titles(world.other) == {"Reading Basics", "First Grade Science", "Open Quiz"}

    assert titles(world.student, grade="all") == {
        "Reading Basics", "Third Grade Math", "First Grade Science", "Open Quiz",
    }
    assert titles(world.student, grade="1SEC") == {"Reading Basics", "First Grade Science", "Open Quiz"}
    assert titles(world.student, grade="all", subject="science") == {
        "Reading Basics", "First Grade Science", "Open Quiz",
    }
    assert titles(world.student, subject="math") == {"Reading Basics", "Third Grade Math", "Open Quiz"}


def test_results_rows(world):
    run(_take_exam(world, world.student, {0: "B", 1: "B"}, ticks=45))
    run(_take_exam(world, world.other, {0: "A"}))

    rows = run(exam_results_rows(world.backend, world.exam.id))
    by_name = {r.student_name: r for r in rows}

    john = by_name["John Middle Last"]
    assert john.student_id == world.student_login_id
    assert john.grade == "3prp"
    assert john.exam_title == "Reading Basics"
    assert john.score == 2
    assert john.total_questions == 2
    assert john.passed is True
    assert john.time_taken == "0m 45s"

    sara = by_name["Sara Ali Omar"]
    assert sara.score == 0
    assert sara.passed is False
    assert sara.time_taken == "-"

    assert run(exam_results_rows(world.backend, "other-exam")) == []


def test_export_results_csv_format():
    text = export_results_csv([ResultRow(
        student_name="John Middle Last", student_id="ABCD2345", grade="3prp",
        exam_title="Reading Basics", score=2, total_questions=2, percentage=100.0,
        passed=True, date="Oct 18, 2026", time_taken="0m 20s",
    )])
    lines = text.splitlines()
    assert lines[0] == (
        "Student Name,Student ID,Grade,Exam,Score,Total Questions,"
        "Percentage,Status,Date,Time Taken"
    )
    assert lines[1] == (
        '"John Middle Last","ABCD2345","3prp","Reading Basics",2,2,'
        '"100%","Passed","Oct 18, 2026","0m 20s"'
    )


@pytest.mark.parametrize("seconds,expected", [
    (None, "-"),
    (0, "-"),
    (20, "0m 20s"),
    (60, "1m 0s"),
    (125, "2m 5s"),
])
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected


def test_format_date_and_filename():
    assert format_date(datetime(2026, 10, 8, 14, 30)) == "Oct 8, 2026"
    assert export_filename("exam_results", date(2026, 10, 18)) == "exam_results_2026-10-18.csv"
