"""
api/routes.py — FastAPI 엔드포인트
"""

import mimetypes
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, Response, UploadFile
from pydantic import BaseModel, ConfigDict, Field

import config
from api.session import SESSION_COOKIE, SessionRegistry
from exampro.models.exam import Question
from exampro.models.session_state import SessionState
from exampro.services.accounts import AccountService
from exampro.services.admin import AdminService
from exampro.services.backend import Backend
from exampro.services.bulk_import import (
    ImportOutcome, export_report_csv, parse_csv, run_import, template_csv,
)
from exampro.services.errors import InvalidCsv, SessionNotActive
from exampro.services.exam_session import ExamSession
from exampro.services.identity import IdentityGate, derive_fingerprint
from exampro.services.results import (
    exam_results_rows, export_filename, export_results_csv, list_dashboard, load_review,
)

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class LoginBody(BaseModel):
    login_id: str
    password: str
    device_fingerprint: Optional[str] = None

class AdminLoginBody(BaseModel):
    email: str
    password: str

class NavigateBody(BaseModel):
    index: int = 0

class SaveAnswerBody(BaseModel):
    answer: Optional[str] = None

class CreateAccountBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str
    password: Optional[str] = None
    phone: Optional[str] = None
    class_name: Optional[str] = Field(None, alias="class")

class UpdateAccountBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = None
    phone: Optional[str] = None
    class_name: Optional[str] = Field(None, alias="class")

class ExportReportBody(BaseModel):
    outcomes: List[ImportOutcome]

class ContactBody(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    message: str

class ExamBody(BaseModel):
    title: str
    description: Optional[str] = None
    duration_minutes: int
    passing_score: int = config.DEFAULT_PASSING_SCORE
    grade: Optional[str] = None
    subject: Optional[str] = None
    is_published: bool = False

class ExamPatchBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    duration_minutes: Optional[int] = None
    passing_score: Optional[int] = None
    grade: Optional[str] = None
    subject: Optional[str] = None
    is_published: Optional[bool] = None

class PassageBody(BaseModel):
    title: Optional[str] = None
    content: str
    image_url: Optional[str] = None
    order_index: int = 0

class QuestionsBody(BaseModel):
    questions: List[Dict[str, Any]]

class QuestionPatchBody(BaseModel):
    question_text: Optional[str] = None
    image_url: Optional[str] = None
    option_a: Optional[str] = None
    option_b: Optional[str] = None
    option_c: Optional[str] = None
    option_d: Optional[str] = None
    correct_answer: Optional[str] = None
    passage_id: Optional[str] = None
    order_index: Optional[int] = None
    points: Optional[int] = None

class PurgeBody(BaseModel):
    max_age_minutes: int = config.ABANDONED_ATTEMPT_MAX_AGE_MINUTES


# ── 헬퍼 ─────────────────────────────────────────────────────────────────────

def _backend(request: Request) -> Backend:
    return request.app.state.backend


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _token(request: Request) -> Optional[str]:
    return getattr(request.state, "token", None)


def _device_fingerprint(request: Request, supplied: Optional[str]) -> str:
    if supplied and supplied.strip():
        return supplied.strip()
    headers = request.headers
    return derive_fingerprint({
        "user_agent": headers.get("user-agent", ""),
        "language": headers.get("accept-language", ""),
        "platform": headers.get("sec-ch-ua-platform", ""),
        "mobile": headers.get("sec-ch-ua-mobile", ""),
    })


def _active_session(request: Request) -> ExamSession:
    token = _token(request)
    exam_session = _registry(request).get(token) if token else None
    if exam_session is None:
        raise SessionNotActive()
    return exam_session


def _account_to_dict(account) -> dict:
    return account.model_dump(mode="json", by_alias=True, exclude={"email"})


def _question_to_dict(q: Question) -> dict:
    # 정답(correct_answer)은 응시 중에 내려보내지 않는다
    return {
        "id": q.id,
        "passage_id": q.passage_id,
        "question_text": q.question_text,
        "image_url": q.image_url,
        "options": {letter: q.option_texts()[letter] for letter in q.available_letters()},
        "points": q.points,
    }


def _state_to_dict(exam_session: ExamSession) -> dict:
    state = exam_session.snapshot()
    return {
        **state.model_dump(mode="json"),
        "exam_id": exam_session.exam_id,
        "answered_count": len(state.user_answers),
        "question_ids": [q.id for q in exam_session.questions],
    }


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── 인증 ─────────────────────────────────────────────────────────────────────

@router.post("/api/auth/login")
async def login(body: LoginBody, request: Request, response: Response):
    gate = IdentityGate(_backend(request))
    fingerprint = _device_fingerprint(request, body.device_fingerprint)
    session = await gate.login(body.login_id, body.password, fingerprint)
    account = await gate.current_account(session.token)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session.token,
        httponly=True,
        samesite="lax",
        max_age=config.SESSION_TTL,
    )
    return {"token": session.token, "account": _account_to_dict(account)}


@router.post("/api/auth/admin-login")
async def admin_login(body: AdminLoginBody, request: Request, response: Response):
    gate = IdentityGate(_backend(request))
    session = await gate.admin_login(body.email, body.password)
    account = await gate.current_account(session.token)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session.token,
        httponly=True,
        samesite="lax",
        max_age=config.SESSION_TTL,
    )
    return {"token": session.token, "account": _account_to_dict(account)}


@router.post("/api/auth/logout")
async def logout(request: Request, response: Response):
    token = _token(request)
    if token:
        _registry(request).discard(token)
        await IdentityGate(_backend(request)).logout(token)
    response.delete_cookie(SESSION_COOKIE)
    return {"ok": True}


# ── 학생: 시험 ───────────────────────────────────────────────────────────────

@router.get("/api/exams")
async def list_exams(request: Request, grade: Optional[str] = None, subject: Optional[str] = None):
    """grade 기본값은 학생의 학년/반, "all"이면 전체."""
    backend = _backend(request)
    account = await IdentityGate(backend).current_account(_token(request))
    entries = await list_dashboard(backend, account, grade=grade, subject=subject)
    return {"exams": [e.model_dump(mode="json") for e in entries]}


@router.post("/api/exams/{exam_id}/start")
async def start_exam(exam_id: str, request: Request):
    backend = _backend(request)
    token = _token(request)
    account = await IdentityGate(backend).current_account(token)
    registry = _registry(request)

    # 같은 시험을 진행 중이면 이어서 응시
    current = registry.get(token)
    if (
        current is not None
        and current.exam_id == exam_id
        and current.state in (SessionState.ACTIVE, SessionState.EXPIRED, SessionState.SUBMITTING)
    ):
        return _state_to_dict(current)

    exam_session = ExamSession(backend, account, exam_id)
    await exam_session.start()
    registry.put(token, exam_session)

    exam = exam_session.exam
    return {
        **_state_to_dict(exam_session),
        "exam": {
            "id": exam.id,
            "title": exam.title,
            "description": exam.description,
            "duration_minutes": exam.duration_minutes,
            "passing_score": exam.passing_score,
        },
        "passages": [p.model_dump(mode="json") for p in exam_session.passages],
    }


@router.get("/api/exam-state")
async def get_exam_state(request: Request):
    return _state_to_dict(_active_session(request))


@router.get("/api/question/{index}")
async def get_question(index: int, request: Request):
    exam_session = _active_session(request)
    questions = exam_session.questions
    if not questions or not (0 <= index < len(questions)):
        raise HTTPException(status_code=404, detail="Question not found")

    q = questions[index]
    passage = exam_session.passage_for(q)
    d = _question_to_dict(q)
    d.update({
        "saved_answer": exam_session.answers.get(q.id, ""),
        "index": index,
        "total": len(questions),
        "passage": passage.model_dump(mode="json") if passage else None,
    })
    return d


@router.post("/api/navigate")
async def navigate(body: NavigateBody, request: Request):
    idx = _active_session(request).navigate(body.index)
    return {"index": idx, "ok": True}


@router.post("/api/save-answer")
async def save_answer(body: SaveAnswerBody, request: Request):
    exam_session = _active_session(request)
    exam_session.select_answer(body.answer)
    return {"ok": True, "answered_count": len(exam_session.answers)}


@router.post("/api/submit-exam")
async def submit_exam(request: Request):
    result = await _active_session(request).submit()
    return {
        "ok": True,
        "attempt_id": result.attempt.id,
        "correct_count": result.correct_count,
        "total": result.total,
        "percentage": result.percentage,
        "passed": result.passed,
        "time_taken_seconds": result.attempt.time_taken_seconds,
    }


@router.post("/api/abandon-exam")
async def abandon_exam(request: Request):
    token = _token(request)
    if token:
        _registry(request).discard(token)
    return {"ok": True}


@router.get("/api/results/{attempt_id}")
async def get_results(attempt_id: str, request: Request):
    backend = _backend(request)
    account = await IdentityGate(backend).current_account(_token(request))
    review = await load_review(backend, account, attempt_id)
    return review.model_dump(mode="json")


# ── 공개: 문의 ───────────────────────────────────────────────────────────────

@router.post("/api/contact")
async def contact(body: ContactBody, request: Request):
    message = await AdminService(_backend(request)).submit_contact_message(
        body.name, body.email, body.message, body.phone
    )
    return {"ok": True, "id": message.id}


# ── 관리자: 계정 ─────────────────────────────────────────────────────────────

@router.get("/api/admin/accounts")
async def list_accounts(request: Request):
    backend = _backend(request)
    await IdentityGate(backend).require_admin(_token(request))
    return {"accounts": [_account_to_dict(a) for a in await backend.list_accounts()]}


@router.post("/api/admin/accounts")
async def create_account(body: CreateAccountBody, request: Request):
    created = await AccountService(_backend(request)).create_account(
        _token(request),
        full_name=body.full_name,
        password=body.password,
        phone=body.phone,
        class_name=body.class_name,
    )
    return {"ok": True, "login_id": created.login_id, "account": _account_to_dict(created.account)}


@router.get("/api/admin/accounts/{account_id}")
async def account_details(account_id: str, request: Request):
    details = await AccountService(_backend(request)).account_details(_token(request), account_id)
    return {
        "account": _account_to_dict(details["account"]),
        "attempts": details["attempts"],
        "login_history": [r.model_dump(mode="json") for r in details["login_history"]],
        "devices": [d.model_dump(mode="json") for d in details["devices"]],
    }


@router.patch("/api/admin/accounts/{account_id}")
async def update_account(account_id: str, body: UpdateAccountBody, request: Request):
    account = await AccountService(_backend(request)).update_profile(
        _token(request),
        account_id,
        full_name=body.full_name,
        phone=body.phone,
        class_name=body.class_name,
    )
    return _account_to_dict(account)


@router.delete("/api/admin/accounts/{account_id}")
async def delete_account(account_id: str, request: Request):
    await AccountService(_backend(request)).delete_account(_token(request), account_id)
    return {"ok": True}


# ── 관리자: CSV 일괄 등록 ────────────────────────────────────────────────────

@router.get("/api/admin/import/template")
async def import_template(request: Request):
    await IdentityGate(_backend(request)).require_admin(_token(request))
    return _csv_response(template_csv(), "students_template.csv")


@router.post("/api/admin/import")
async def import_students(
    request: Request,
    file: UploadFile = File(...),
    default_class: str = Form(""),
):
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Please upload a CSV file")

    data = await file.read()
    if len(data) > config.MAX_CSV_SIZE:
        raise HTTPException(status_code=413, detail="CSV file is too large (max 2MB).")
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise InvalidCsv() from e

    rows = parse_csv(text, default_class)
    if not rows:
        raise HTTPException(status_code=400, detail="No valid students found in CSV")

    report = await run_import(AccountService(_backend(request)), _token(request), rows)
    return {
        "outcomes": [o.model_dump() for o in report.outcomes],
        "success_count": report.success_count,
        "failure_count": report.failure_count,
        "valid_count": report.valid_count,
        "total": report.total,
    }


@router.post("/api/admin/import/export")
async def export_import_report(body: ExportReportBody, request: Request):
    await IdentityGate(_backend(request)).require_admin(_token(request))
    return _csv_response(export_report_csv(body.outcomes), export_filename("import_results"))


# ── 관리자: 결과 / 응시 기록 ─────────────────────────────────────────────────

@router.get("/api/admin/results/export")
async def export_results(request: Request, exam_id: Optional[str] = None):
    backend = _backend(request)
    await IdentityGate(backend).require_admin(_token(request))
    rows = await exam_results_rows(backend, exam_id)
    return _csv_response(export_results_csv(rows), export_filename("exam_results"))


@router.delete("/api/admin/attempts/{attempt_id}")
async def grant_retake(attempt_id: str, request: Request):
    await AdminService(_backend(request)).grant_retake(_token(request), attempt_id)
    return {"ok": True}


@router.post("/api/admin/attempts/purge")
async def purge_abandoned(body: PurgeBody, request: Request):
    removed = await AdminService(_backend(request)).purge_abandoned(
        _token(request), body.max_age_minutes
    )
    return {"ok": True, "removed": removed}


# ── 관리자: 출제 ─────────────────────────────────────────────────────────────

@router.get("/api/admin/exams")
async def admin_list_exams(request: Request):
    exams = await AdminService(_backend(request)).list_exams(_token(request))
    return {"exams": [e.model_dump(mode="json") for e in exams]}


@router.get("/api/admin/exams/{exam_id}")
async def preview_exam(exam_id: str, request: Request):
    """관리자 미리보기 (정답 포함)."""
    preview = await AdminService(_backend(request)).preview_exam(_token(request), exam_id)
    return preview.model_dump(mode="json")


@router.post("/api/admin/exams")
async def create_exam(body: ExamBody, request: Request):
    exam = await AdminService(_backend(request)).create_exam(_token(request), body.model_dump())
    return exam.model_dump(mode="json")


@router.patch("/api/admin/exams/{exam_id}")
async def update_exam(exam_id: str, body: ExamPatchBody, request: Request):
    exam = await AdminService(_backend(request)).update_exam(
        _token(request), exam_id, **body.model_dump(exclude_none=True)
    )
    return exam.model_dump(mode="json")


@router.delete("/api/admin/exams/{exam_id}")
async def delete_exam(exam_id: str, request: Request):
    await AdminService(_backend(request)).delete_exam(_token(request), exam_id)
    return {"ok": True}


@router.post("/api/admin/exams/{exam_id}/passages")
async def add_passage(exam_id: str, body: PassageBody, request: Request):
    passage = await AdminService(_backend(request)).add_passage(
        _token(request), exam_id, body.model_dump()
    )
    return passage.model_dump(mode="json")


@router.post("/api/admin/exams/{exam_id}/questions")
async def add_questions(exam_id: str, body: QuestionsBody, request: Request):
    questions = await AdminService(_backend(request)).add_questions(
        _token(request), exam_id, body.questions
    )
    return {"ok": True, "count": len(questions), "ids": [q.id for q in questions]}


@router.patch("/api/admin/questions/{question_id}")
async def update_question(question_id: str, body: QuestionPatchBody, request: Request):
    question = await AdminService(_backend(request)).update_question(
        _token(request), question_id, **body.model_dump(exclude_unset=True)
    )
    return question.model_dump(mode="json")


@router.delete("/api/admin/questions/{question_id}")
async def delete_question(question_id: str, request: Request):
    await AdminService(_backend(request)).delete_question(_token(request), question_id)
    return {"ok": True}



@router.post("/api/admin/images")
async def upload_image(request: Request, file: UploadFile = File(...)):
    data = await file.read()
    url = await AdminService(_backend(request)).upload_image(_token(request), file.filename, data)
    return {"ok": True, "url": url}


@router.get("/storage/{bucket}/{path:path}")
async def get_stored_file(bucket: str, path: str, request: Request):
    """업로드한 이미지 공개 조회 (로그인 불필요)."""
    data = await _backend(request).get_file(bucket, path)
    if data is None:
        raise HTTPException(status_code=404, detail="File not found")
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# ── 관리자: 문의함 ───────────────────────────────────────────────────────────

@router.get("/api/admin/contact")
async def list_contact(request: Request):
    messages = await AdminService(_backend(request)).list_contact_messages(_token(request))
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/api/admin/contact/{message_id}/read")
async def mark_contact_read(message_id: str, request: Request):
    message = await AdminService(_backend(request)).mark_read(_token(request), message_id)
    return message.model_dump(mode="json")
