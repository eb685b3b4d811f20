import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exampro.models.exam import Exam, Question
from exampro.services.accounts import AccountService
from exampro.services.memory_backend import InMemoryBackend


ADMIN_EMAIL = "admin@school.test"
ADMIN_PASSWORD = "admin-pass-123"


def run(coro):
    return asyncio.run(coro)


async def seed_world(backend, duration_minutes=1, passing_score=70, published=True):
    admin = await backend.bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD)
    admin_session = await backend.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD)

    accounts = AccountService(backend)
    student = await accounts.create_account(
        admin_session.token, full_name="John Middle Last", class_name="3prp"
    )
    other = await accounts.create_account(
        admin_session.token, full_name="Sara Ali Omar", class_name="1sec"
    )

    exam = await backend.insert_exam(Exam(
        title="Reading Basics",
        duration_minutes=duration_minutes,
        passing_score=passing_score,
        is_published=published,
        created_by=admin.id,
    ))
    questions = await backend.insert_questions([
        Question(
            exam_id=exam.id, question_text="2 + 2 = ?", option_a="3", option_b="4",
            option_c="5", option_d="6", correct_answer="B", order_index=0,
        ),
        Question(
            exam_id=exam.id, question_text="The sky is green.", option_a="True",
            option_b="False", correct_answer="B", order_index=1,
        ),
    ])
    return SimpleNamespace(
        backend=backend,
        admin=admin,
        admin_token=admin_session.token,
        student=student.account,
        student_login_id=student.login_id,
        other=other.account,
        other_login_id=other.login_id,
        exam=exam,
        questions=questions,
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def world(backend):
    return run(seed_world(backend))
