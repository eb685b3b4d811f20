from datetime import timedelta

import pytest

from conftest import run
from exampro.models.account import utcnow
from exampro.models.attempt import Attempt
from exampro.services.admin import AdminService
from exampro.services.errors import (
    AdminRequired, AttemptNotFound, ExamNotFound, QuestionNotFound,
    ValidationFailed,
)
from exampro.services.identity import IdentityGate


def _student_token(world):
    return run(IdentityGate(world.backend).login(
        world.student_login_id, world.student_login_id, "fp-admin-test"
    )).token


def test_authoring_requires_admin(world):
    service = AdminService(world.backend)
    token = _student_token(world)
    with pytest.raises(AdminRequired):
        run(service.create_exam(token, {"title": "X", "duration_minutes": 10}))
    with pytest.raises(AdminRequired):
        run(service.grant_retake(token, "any"))


def test_create_and_update_exam(world):
    service = AdminService(world.backend)
    exam = run(service.create_exam(world.admin_token, {"title": "Grammar", "duration_minutes": 15}))
    assert exam.created_by == world.admin.id
    assert exam.passing_score == 70
    assert exam.is_published is False

    updated = run(service.update_exam(world.admin_token, exam.id, is_published=True, passing_score=60))
    assert updated.is_published is True
    assert updated.passing_score == 60
    assert updated.updated_at >= exam.updated_at


@pytest.mark.parametrize("data", [
    {"title": "", "duration_minutes": 10},
    {"title": "X", "duration_minutes": 0},
    {"title": "X", "duration_minutes": 10, "passing_score": 120},
])
def test_create_exam_validation(world, data):
    with pytest.raises(ValidationFailed):
        run(AdminService(world.backend).create_exam(world.admin_token, data))


def test_update_exam_validation(world):
    service = AdminService(world.backend)
    with pytest.raises(ValidationFailed):
        run(service.update_exam(world.admin_token, world.exam.id, duration_minutes=-1))
    with pytest.raises(ExamNotFound):
        run(service.update_exam(world.admin_token, "missing", title="X"))


def test_admin_sees_unpublished_exams_and_answers(world):
    service = AdminService(world.backend)
    draft = run(service.create_exam(world.admin_token, {
        "title": "Draft", "duration_minutes": 10, "grade": "2prp", "subject": "english",
    }))

    exams = run(service.list_exams(world.admin_token))
    assert {e.id for e in exams} == {world.exam.id, draft.id}
    assert next(e for e in exams if e.id == draft.id).subject == "english"

    preview = run(service.preview_exam(world.admin_token, world.exam.id))
    assert preview.exam.id == world.exam.id
    assert [q.correct_answer for q in preview.questions] == ["B", "B"]
    assert preview.passages == []

    with pytest.raises(ExamNotFound):
        run(service.preview_exam(world.admin_token, "missing"))
    with pytest.raises(AdminRequired):
        run(service.list_exams(_student_token(world)))


def test_update_question(world):
    service = AdminService(world.backend)
    first = world.questions[0]

    updated = run(service.update_question(
        world.admin_token, first.id, question_text="Edited", correct_answer="d",
    ))
    assert updated.question_text == "Edited"
    assert updated.correct_answer == "D"
    assert run(world.backend.get_question(first.id)).correct_answer == "D"

    # 보기가 A/B뿐인 문제의 정답을 C로 바꿀 수 없다
    with pytest.raises(ValidationFailed):
        run(service.update_question(world.admin_token, world.questions[1].id, correct_answer="C"))
    assert run(world.backend.get_question(world.questions[1].id)).correct_answer == "B"

    with pytest.raises(QuestionNotFound):
        run(service.update_question(world.admin_token, "missing", question_text="X"))


def test_delete_missing_question(world):
    with pytest.raises(QuestionNotFound):
        run(AdminService(world.backend).delete_question(world.admin_token, "missing"))


def test_add_questions_appends_in_order(world):
    service = AdminService(world.backend)
    added = run(service.add_questions(world.admin_token, world.exam.id, [
        {"question_text": "Q3", "option_a": "x", "option_b": "y", "correct_answer": "a"},
        {"question_text": "Q4", "option_a": "x", "option_b": "y", "option_c": "z", "correct_answer": "C"},
    ]))
    assert [q.order_index for q in added] == [2, 3]
    assert added[0].correct_answer == "A"

    questions = run(world.backend.list_questions(world.exam.id))
    assert [q.question_text for q in questions][-2:] == ["Q3", "Q4"]


def test_add_questions_rejects_whole_batch_on_bad_item(world):
    service = AdminService(world.backend)
    with pytest.raises(ValidationFailed) as exc:
        run(service.add_questions(world.admin_token, world.exam.id, [
            {"question_text": "Q3", "option_a": "x", "option_b": "y", "correct_answer": "A"},
            {"question_text": "Q4", "option_a": "x", "option_b": "y", "correct_answer": "D"},
        ]))
    assert exc.value.message.startswith("Question 2:")
    assert len(run(world.backend.list_questions(world.exam.id))) == 2

    with pytest.raises(ValidationFailed):
        run(service.add_questions(world.admin_token, world.exam.id, []))


def test_passage_and_question_link(world):
    service = AdminService(world.backend)
    passage = run(service.add_passage(world.admin_token, world.exam.id, {"title": "P", "content": "Text"}))
    added = run(service.add_questions(world.admin_token, world.exam.id, [
        {"question_text": "Q", "option_a": "x", "option_b": "y", "correct_answer": "B",
         "passage_id": passage.id},
    ]))
    assert added[0].passage_id == passage.id

    run(service.delete_question(world.admin_token, added[0].id))
    assert len(run(world.backend.list_questions(world.exam.id))) == 2


def test_delete_exam_cascades(world):
    service = AdminService(world.backend)
    run(world.backend.insert_attempt(Attempt(
        account_id=world.student.id, exam_id=world.exam.id, total_questions=2,
    )))
    run(service.delete_exam(world.admin_token, world.exam.id))

    assert run(world.backend.get_exam(world.exam.id)) is None
    assert run(world.backend.list_questions(world.exam.id)) == []
    assert run(world.backend.list_attempts(exam_id=world.exam.id)) == []


def test_grant_retake_missing_attempt(world):
    with pytest.raises(AttemptNotFound):
        run(AdminService(world.backend).grant_retake(world.admin_token, "missing"))


def test_purge_abandoned(world):
    backend = world.backend
    stale = run(backend.insert_attempt(Attempt(
        account_id=world.student.id, exam_id=world.exam.id, total_questions=2,
        started_at=utcnow() - timedelta(hours=5),
    )))
    fresh = run(backend.insert_attempt(Attempt(
        account_id=world.other.id, exam_id=world.exam.id, total_questions=2,
    )))

    removed = run(AdminService(backend).purge_abandoned(world.admin_token, max_age_minutes=60))

    assert removed == 1
    assert run(backend.get_attempt(stale.id)) is None
    assert run(backend.get_attempt(fresh.id)) is not None


def test_contact_inbox(world):
    service = AdminService(world.backend)
    message = run(service.submit_contact_message(
        name="Parent", email="parent@example.com", message="When is the exam?", phone="",
    ))
    assert message.phone is None
    assert message.is_read is False

    inbox = run(service.list_contact_messages(world.admin_token))
    assert [m.id for m in inbox] == [message.id]

    read = run(service.mark_read(world.admin_token, message.id))
    assert read.is_read is True

    with pytest.raises(AdminRequired):
        run(service.list_contact_messages(_student_token(world)))


def test_contact_message_validation(world):
    with pytest.raises(ValidationFailed):
        run(AdminService(world.backend).submit_contact_message(name="", email="a@b.c", message="hi"))


def test_upload_image_returns_public_url(world):
    service = AdminService(world.backend)
    url = run(service.upload_image(world.admin_token, "diagram.PNG", b"\x89PNG..."))

    assert url.startswith(world.backend.public_url + "/exam-images/")
    assert url.endswith(".png")
    key = url[len(world.backend.public_url) + 1:]
    assert world.backend._files[key] == b"\x89PNG..."


@pytest.mark.parametrize("filename,data", [
    ("notes.txt", b"text"),
    ("empty.png", b""),
])
def test_upload_image_rejects_bad_files(world, filename, data):
    with pytest.raises(ValidationFailed):
        run(AdminService(world.backend).upload_image(world.admin_token, filename, data))
