"""
services/results.py

결과/복습 화면과 결과 내보내기.
완료된 응시 기록 + 답안 + 원래 문제를 합치는 조회 전용 로직.
합격 여부는 scoring.is_passed로 매번 다시 계산한다.
"""

import csv
import io
import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from exampro.models.account import Account
from exampro.models.attempt import Attempt
from exampro.models.exam import GENERAL, Exam, Passage, Question
from exampro.services.backend import Backend
from exampro.services.errors import AttemptNotFound
from exampro.services.scoring import is_passed

logger = logging.getLogger(__name__)

# 학년/과목 필터 해제
ALL = "all"

RESULTS_HEADER = [
    "Student Name", "Student ID", "Grade", "Exam", "Score",
    "Total Questions", "Percentage", "Status", "Date", "Time Taken",
]


class ReviewItem(BaseModel):
    question: Question
    passage: Optional[Passage] = None
    selected_answer: Optional[str] = None
    is_correct: bool = False


class AttemptReview(BaseModel):
    attempt: Attempt
    exam: Exam
    items: List[ReviewItem]
    correct_count: int
    total: int
    percentage: float
    passed: bool


class DashboardEntry(BaseModel):
    exam: Exam
    completed: bool
    attempt: Optional[Attempt] = None
    passed: Optional[bool] = None


class ResultRow(BaseModel):
    student_name: str
    student_id: str
    grade: str
    exam_title: str
    score: int
    total_questions: int
    percentage: float
    passed: bool
    date: str
    time_taken: str


# ── 복습 ────────────────────────────────────────────────────────────────────

async def load_review(backend: Backend, account: Account, attempt_id: str) -> AttemptReview:
    """
    본인의 완료된 응시 기록을 문제/지문과 합쳐 돌려준다.
    다른 사람의 기록이거나 진행 중이면 AttemptNotFound.
    """
    attempt = await backend.get_attempt(attempt_id)
    if attempt is None or attempt.account_id != account.id or not attempt.is_completed:
        raise AttemptNotFound()

    exam = await backend.get_exam(attempt.exam_id)
    if exam is None:
        raise AttemptNotFound()

    questions: Dict[str, Question] = {q.id: q for q in await backend.list_questions(exam.id)}
    passages: Dict[str, Passage] = {p.id: p for p in await backend.list_passages(exam.id)}

    items = []
    for answer in await backend.list_answers(attempt.id):
        question = questions.get(answer.question_id)
        if question is None:
            logger.warning(f"복습: 삭제된 문제 {answer.question_id} 건너뜀 (응시 {attempt.id})")
            continue
        items.append(ReviewItem(
            question=question,
            passage=passages.get(question.passage_id) if question.passage_id else None,
            selected_answer=answer.selected_answer,
            is_correct=bool(answer.is_correct),
        ))
    items.sort(key=lambda item: item.question.order_index)

    percentage = attempt.percentage or 0.0
    return AttemptReview(
        attempt=attempt,
        exam=exam,
        items=items,
        correct_count=attempt.correct_answers or 0,
        total=attempt.total_questions,
        percentage=percentage,
        passed=is_passed(percentage, exam.passing_score),
    )



def _matches(value: Optional[str], wanted: Optional[str]) -> bool:
    """시험의 학년/과목 값이 필터와 맞는지. 비어 있거나 general인 시험은 항상 맞다."""
    if wanted is None or wanted.strip().lower() in ("", ALL):
        return True
    if value is None or value.strip().lower() == GENERAL:
        return True
    return value.strip().lower() == wanted.strip().lower()


async def list_dashboard(
    backend: Backend,
    account: Account,
    grade: Optional[str] = None,
    subject: Optional[str] = None,
) -> List[DashboardEntry]:
    """
    공개된 시험 목록과 본인의 완료 여부.
    grade를 주지 않으면 학생의 학년/반으로 거른다. "all"이면 거르지 않는다.
    """
    if grade is None:
        grade = account.class_name
    entries = []
    completed = await backend.list_attempts(account_id=account.id, completed=True)
    for exam in await backend.list_exams(published_only=True):
        if not (_matches(exam.grade, grade) and _matches(exam.subject, subject)):
            continue
        attempt = next((a for a in completed if a.exam_id == exam.id), None)
        entries.append(DashboardEntry(
            exam=exam,
            completed=attempt is not None,
            attempt=attempt,
            passed=is_passed(attempt.percentage, exam.passing_score) if attempt else None,
        ))
    return entries


# ── 내보내기 ────────────────────────────────────────────────────────────────

def format_time(seconds: Optional[int]) -> str:
    if not seconds:
        return "-"
    return f"{seconds // 60}m {seconds % 60}s"


def format_date(value: datetime) -> str:
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def export_filename(prefix: str, today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{prefix}_{today.isoformat()}.csv"


async def exam_results_rows(backend: Backend, exam_id: Optional[str] = None) -> List[ResultRow]:
    """완료된 응시 기록을 학생/시험 정보와 합쳐 내보내기 행으로 만든다."""
    rows = []
    accounts: Dict[str, Optional[Account]] = {}
    exams: Dict[str, Optional[Exam]] = {}
    for attempt in await backend.list_attempts(exam_id=exam_id, completed=True):
        if attempt.account_id not in accounts:
            accounts[attempt.account_id] = await backend.get_account(attempt.account_id)
        if attempt.exam_id not in exams:
            exams[attempt.exam_id] = await backend.get_exam(attempt.exam_id)
        account = accounts[attempt.account_id]
        exam = exams[attempt.exam_id]

        percentage = attempt.percentage or 0.0
        rows.append(ResultRow(
            student_name=account.full_name if account else "Unknown",
            student_id=account.login_id if account else "",
            grade=(account.class_name or "") if account else "",
            exam_title=exam.title if exam else "Unknown Exam",
            score=attempt.correct_answers or 0,
            total_questions=attempt.total_questions,
            percentage=percentage,
            passed=is_passed(percentage, exam.passing_score) if exam else False,
            date=format_date(attempt.completed_at),
            time_taken=format_time(attempt.time_taken_seconds),
        ))
    return rows


def export_results_csv(rows: List[ResultRow]) -> str:
    buf = io.StringIO()
    buf.write(",".join(RESULTS_HEADER) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    for r in rows:
        writer.writerow([
            r.student_name,
            r.student_id,
            r.grade,
            r.exam_title,
            r.score,
            r.total_questions,
            f"{r.percentage:.0f}%",
            "Passed" if r.passed else "Failed",
            r.date,
            r.time_taken,
        ])
    return buf.getvalue()
