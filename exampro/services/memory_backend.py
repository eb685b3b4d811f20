"""
services/memory_backend.py — 인메모리 백엔드 구현

단일 프로세스 개발/테스트용. 테이블은 dict, 동시 접근은 Lock으로 보호.
비밀번호는 passlib(argon2)로 해시, 세션 토큰은 secrets로 발급.

latency를 주면 모든 호출이 그만큼 대기(asyncio.sleep)한 뒤 수행되므로
네트워크 지연 중의 타이머/사용자 이벤트 경합을 재현할 수 있다.
"""

import asyncio
import secrets
import threading
import uuid
from typing import Dict, List, Optional

from passlib.context import CryptContext

from exampro.models.account import (
    Account, AuthSession, DeviceRegistration, LoginRecord, Role,
)
from exampro.models.attempt import Answer, Attempt
from exampro.models.contact import ContactMessage
from exampro.models.exam import Exam, Passage, Question
from exampro.services.backend import Backend
from exampro.services.errors import (
    AccountNotFound, AttemptNotFound, BackendError, DuplicateRecord,
    ExamNotFound, InvalidCredentials, QuestionNotFound,
)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


class InMemoryBackend(Backend):

    def __init__(self, latency: float = 0.0, public_url: str = "http://localhost/storage"):
        self.latency = latency
        self.public_url = public_url.rstrip("/")
        self._lock = threading.Lock()
        # 인증
        self._users: Dict[str, dict] = {}          # email -> {"id", "password_hash"}
        self._sessions: Dict[str, AuthSession] = {}
        # 테이블
        self._accounts: Dict[str, Account] = {}
        self._devices: Dict[str, DeviceRegistration] = {}  # fingerprint -> registration
        self._logins: List[LoginRecord] = []
        self._exams: Dict[str, Exam] = {}
        self._passages: Dict[str, Passage] = {}
        self._questions: Dict[str, Question] = {}
        self._attempts: Dict[str, Attempt] = {}
        self._answers: Dict[str, Answer] = {}
        self._messages: Dict[str, ContactMessage] = {}
        self._files: Dict[str, bytes] = {}

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    # ── 인증 ────────────────────────────────────────────────────────────────

    async def sign_in(self, email: str, password: str) -> AuthSession:
        await self._io()
        email = email.strip().lower()
        with self._lock:
            user = self._users.get(email)
        if user is None or not pwd_context.verify(password, user["password_hash"]):
            raise InvalidCredentials()
        session = AuthSession(token=secrets.token_urlsafe(32), account_id=user["id"], email=email)
        with self._lock:
            self._sessions[session.token] = session
        return session.model_copy()

    async def get_session(self, token: str) -> Optional[AuthSession]:
        await self._io()
        with self._lock:
            session = self._sessions.get(token)
            return session.model_copy() if session else None

    async def sign_out(self, token: str) -> None:
        await self._io()
        with self._lock:
            self._sessions.pop(token, None)

    async def create_auth_user(self, email: str, password: str) -> str:
        await self._io()
        email = email.strip().lower()
        password_hash = pwd_context.hash(password)
        with self._lock:
            if email in self._users:
                raise DuplicateRecord("A user with this email address has already been registered")
            user_id = str(uuid.uuid4())
            self._users[email] = {"id": user_id, "password_hash": password_hash}
        return user_id

    async def delete_auth_user(self, user_id: str) -> None:
        await self._io()
        with self._lock:
            for email in [e for e, u in self._users.items() if u["id"] == user_id]:
                del self._users[email]
            for token in [t for t, s in self._sessions.items() if s.account_id == user_id]:
                del self._sessions[token]

    async def is_admin(self, account_id: str) -> bool:
        await self._io()
        with self._lock:
            account = self._accounts.get(account_id)
            return account is not None and account.role == Role.ADMIN

    # ── 계정 ────────────────────────────────────────────────────────────────

    async def get_account(self, account_id: str) -> Optional[Account]:
        await self._io()
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy() if account else None

    async def get_account_by_login_id(self, login_id: str) -> Optional[Account]:
        await self._io()
        with self._lock:
            for account in self._accounts.values():
                if account.login_id == login_id:
                    return account.model_copy()
        return None

    async def login_id_exists(self, login_id: str) -> bool:
        return await self.get_account_by_login_id(login_id) is not None

    async def insert_account(self, account: Account) -> Account:
        await self._io()
        with self._lock:
            if account.id in self._accounts:
                raise DuplicateRecord("Account already exists")
            if any(a.login_id == account.login_id for a in self._accounts.values()):
                raise DuplicateRecord(f"Login ID {account.login_id} already exists")
            self._accounts[account.id] = account.model_copy()
        return account.model_copy()

    async def update_account(self, account_id: str, **fields) -> Account:
        await self._io()
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound()
            updated = account.model_copy(update=fields)
            self._accounts[account_id] = updated
            return updated.model_copy()

    async def delete_account(self, account_id: str) -> None:
        await self._io()
        with self._lock:
            if self._accounts.pop(account_id, None) is None:
                raise AccountNotFound()
            for fp in [fp for fp, d in self._devices.items() if d.account_id == account_id]:
                del self._devices[fp]
            self._logins = [r for r in self._logins if r.account_id != account_id]
            for attempt_id in [a.id for a in self._attempts.values() if a.account_id == account_id]:
                self._drop_attempt(attempt_id)

    async def list_accounts(self) -> List[Account]:
        await self._io()
        with self._lock:
            accounts = sorted(self._accounts.values(), key=lambda a: a.created_at, reverse=True)
            return [a.model_copy() for a in accounts]

    # ── 기기 등록 / 로그인 이력 ──────────────────────────────────────────────

    async def get_device_registration(self, fingerprint: str) -> Optional[DeviceRegistration]:
        await self._io()
        with self._lock:
            registration = self._devices.get(fingerprint)
            return registration.model_copy() if registration else None

    async def insert_device_registration(self, registration: DeviceRegistration) -> DeviceRegistration:
        await self._io()
        with self._lock:
            if registration.device_fingerprint in self._devices:
                raise DuplicateRecord("Device already registered")
            self._devices[registration.device_fingerprint] = registration.model_copy()
        return registration.model_copy()

    async def list_device_registrations(self, account_id: str) -> List[DeviceRegistration]:
        await self._io()
        with self._lock:
            rows = [d for d in self._devices.values() if d.account_id == account_id]
        return sorted(rows, key=lambda d: d.created_at, reverse=True)

    async def insert_login_record(self, record: LoginRecord) -> LoginRecord:
        await self._io()
        with self._lock:
            self._logins.append(record.model_copy())
        return record

    async def list_login_history(self, account_id: str, limit: int = 50) -> List[LoginRecord]:
        await self._io()
        with self._lock:
            rows = [r for r in self._logins if r.account_id == account_id]
        rows.sort(key=lambda r: r.login_at, reverse=True)
        return rows[:limit]

    # ── 시험 / 지문 / 문제 ───────────────────────────────────────────────────

    async def get_exam(self, exam_id: str) -> Optional[Exam]:
        await self._io()
        with self._lock:
            exam = self._exams.get(exam_id)
            return exam.model_copy() if exam else None

    async def list_exams(self, published_only: bool = False) -> List[Exam]:
        await self._io()
        with self._lock:
            exams = [e for e in self._exams.values() if e.is_published or not published_only]
        return sorted(exams, key=lambda e: e.created_at, reverse=True)

    async def insert_exam(self, exam: Exam) -> Exam:
        await self._io()
        with self._lock:
            if exam.id in self._exams:
                raise DuplicateRecord("Exam already exists")
            self._exams[exam.id] = exam.model_copy()
        return exam.model_copy()

    async def update_exam(self, exam_id: str, **fields) -> Exam:
        await self._io()
        with self._lock:
            exam = self._exams.get(exam_id)
            if exam is None:
                raise ExamNotFound()
            updated = exam.model_copy(update=fields)
            self._exams[exam_id] = updated
            return updated.model_copy()

    async def delete_exam(self, exam_id: str) -> None:
        await self._io()
        with self._lock:
            if self._exams.pop(exam_id, None) is None:
                raise ExamNotFound()
            for pid in [p.id for p in self._passages.values() if p.exam_id == exam_id]:
                del self._passages[pid]
            for qid in [q.id for q in self._questions.values() if q.exam_id == exam_id]:
                del self._questions[qid]
            for attempt_id in [a.id for a in self._attempts.values() if a.exam_id == exam_id]:
                self._drop_attempt(attempt_id)

    async def list_passages(self, exam_id: str) -> List[Passage]:
        await self._io()
        with self._lock:
            rows = [p.model_copy() for p in self._passages.values() if p.exam_id == exam_id]
        return sorted(rows, key=lambda p: p.order_index)

    async def insert_passage(self, passage: Passage) -> Passage:
        await self._io()
        with self._lock:
            if passage.exam_id not in self._exams:
                raise ExamNotFound()
            self._passages[passage.id] = passage.model_copy()
        return passage.model_copy()

    async def get_question(self, question_id: str) -> Optional[Question]:
        await self._io()
        with self._lock:
            question = self._questions.get(question_id)
            return question.model_copy() if question else None

    async def list_questions(self, exam_id: str) -> List[Question]:
        await self._io()
        with self._lock:
            rows = [q.model_copy() for q in self._questions.values() if q.exam_id == exam_id]
        return sorted(rows, key=lambda q: q.order_index)

    async def insert_questions(self, questions: List[Question]) -> List[Question]:
        await self._io()
        with self._lock:
            for q in questions:
                if q.exam_id not in self._exams:
                    raise ExamNotFound()
                if q.passage_id and q.passage_id not in self._passages:
                    raise BackendError(f"Passage {q.passage_id} does not exist")
            for q in questions:
                self._questions[q.id] = q.model_copy()
        return [q.model_copy() for q in questions]

    async def update_question(self, question_id: str, **fields) -> Question:
        await self._io()
        with self._lock:
            question = self._questions.get(question_id)
            if question is None:
                raise QuestionNotFound()
            updated = question.model_copy(update=fields)
            self._questions[question_id] = updated
            return updated.model_copy()

    async def delete_question(self, question_id: str) -> None:
        await self._io()
        with self._lock:
            if self._questions.pop(question_id, None) is None:
                raise QuestionNotFound()

    # ── 응시 기록 / 답안 ────────────────────────────────────────────────────

    def _completed_elsewhere(self, attempt: Attempt) -> bool:
        # Lock을 잡은 상태에서만 호출
        return any(
            a.id != attempt.id and a.is_completed
            and a.account_id == attempt.account_id and a.exam_id == attempt.exam_id
            for a in self._attempts.values()
        )

    def _drop_attempt(self, attempt_id: str) -> None:
        # Lock을 잡은 상태에서만 호출
        self._attempts.pop(attempt_id, None)
        for aid in [a.id for a in self._answers.values() if a.attempt_id == attempt_id]:
            del self._answers[aid]

    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        await self._io()
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            return attempt.model_copy() if attempt else None

    async def list_attempts(
        self,
        account_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> List[Attempt]:
        await self._io()
        with self._lock:
            rows = [
                a.model_copy() for a in self._attempts.values()
                if (account_id is None or a.account_id == account_id)
                and (exam_id is None or a.exam_id == exam_id)
                and (completed is None or a.is_completed == completed)
            ]
        return sorted(rows, key=lambda a: a.started_at, reverse=True)

    async def insert_attempt(self, attempt: Attempt) -> Attempt:
        await self._io()
        with self._lock:
            if attempt.exam_id not in self._exams:
                raise ExamNotFound()
            self._attempts[attempt.id] = attempt.model_copy()
        return attempt.model_copy()

    async def update_attempt(self, attempt_id: str, **fields) -> Attempt:
        await self._io()
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                raise AttemptNotFound()
            if fields.get("completed_at") is not None and self._completed_elsewhere(attempt):
                raise DuplicateRecord("Exam already completed for this account")
            updated = attempt.model_copy(update=fields)
            self._attempts[attempt_id] = updated
            return updated.model_copy()

    async def delete_attempt(self, attempt_id: str) -> None:
        await self._io()
        with self._lock:
            if attempt_id not in self._attempts:
                raise AttemptNotFound()
            self._drop_attempt(attempt_id)

    async def insert_answers(self, answers: List[Answer]) -> List[Answer]:
        await self._io()
        with self._lock:
            for answer in answers:
                if answer.attempt_id not in self._attempts:
                    raise AttemptNotFound()
            keys = {(a.attempt_id, a.question_id) for a in self._answers.values()}
            for answer in answers:
                if (answer.attempt_id, answer.question_id) in keys:
                    raise DuplicateRecord("Answer already recorded for this question")
            for answer in answers:
                self._answers[answer.id] = answer.model_copy()
        return [a.model_copy() for a in answers]

    async def list_answers(self, attempt_id: str) -> List[Answer]:
        await self._io()
        with self._lock:
            return [a.model_copy() for a in self._answers.values() if a.attempt_id == attempt_id]

    async def delete_answers(self, attempt_id: str) -> int:
        await self._io()
        with self._lock:
            ids = [a.id for a in self._answers.values() if a.attempt_id == attempt_id]
            for aid in ids:
                del self._answers[aid]
        return len(ids)

    # ── 문의 / 파일 ─────────────────────────────────────────────────────────

    async def insert_contact_message(self, message: ContactMessage) -> ContactMessage:
        await self._io()
        with self._lock:
            self._messages[message.id] = message.model_copy()
        return message.model_copy()

    async def list_contact_messages(self) -> List[ContactMessage]:
        await self._io()
        with self._lock:
            rows = [m.model_copy() for m in self._messages.values()]
        return sorted(rows, key=lambda m: m.created_at, reverse=True)

    async def mark_contact_message_read(self, message_id: str) -> ContactMessage:
        await self._io()
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise BackendError("Message not found")
            message = message.model_copy(update={"is_read": True})
            self._messages[message_id] = message
            return message.model_copy()

    async def upload_file(self, bucket: str, path: str, data: bytes) -> str:
        await self._io()
        key = f"{bucket}/{path.lstrip('/')}"
        with self._lock:
            self._files[key] = bytes(data)
        return f"{self.public_url}/{key}"

    async def get_file(self, bucket: str, path: str) -> Optional[bytes]:
        await self._io()
        with self._lock:
            return self._files.get(f"{bucket}/{path.lstrip('/')}")
