"""
services/sql_backend.py — SQLAlchemy 기반 백엔드 구현 (운영용)

DATABASE_URL 하나로 SQLite 파일이든 PostgreSQL이든 같은 코드로 붙는다.
동기 세션 작업은 asyncio.to_thread로 넘겨 이벤트 루프(타이머)를 막지 않는다.
호출 하나가 트랜잭션 하나이며, 유일성 제약 위반은 DuplicateRecord로 바뀐다.
"""

import asyncio
import logging
import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy import create_engine, inspect as sa_inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import config
from exampro.models.account import (
    Account, AuthSession, DeviceRegistration, LoginRecord, Role,
)
from exampro.models.attempt import Answer, Attempt
from exampro.models.contact import ContactMessage
from exampro.models.exam import Exam, Passage, Question
from exampro.models.tables import (
    AccountRow, AnswerRow, AttemptRow, AuthSessionRow, AuthUser, Base,
    ContactMessageRow, DeviceRegistrationRow, ExamRow, LoginRecordRow,
    PassageRow, QuestionRow, StoredFile,
)
from exampro.services.backend import Backend
from exampro.services.errors import (
    AccountNotFound, AttemptNotFound, BackendError, DuplicateRecord,
    ExamNotFound, ExamProError, InvalidCredentials, QuestionNotFound,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

T = TypeVar("T")


def _to_model(model_cls: type, row) -> Any:
    """행 -> pydantic 모델. SQLite가 돌려주는 naive datetime은 UTC로 본다."""
    values: Dict[str, Any] = {}
    for attr in sa_inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        values[attr.key] = value
    return model_cls(**values)


def _columns(model: BaseModel) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in model.model_dump().items()}


def _assign(row, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(row, key, value.value if isinstance(value, Enum) else value)


def _drop_attempts(db: Session, *criteria) -> None:
    ids = [r.id for r in db.query(AttemptRow.id).filter(*criteria).all()]
    if ids:
        db.query(AnswerRow).filter(AnswerRow.attempt_id.in_(ids)).delete(synchronize_session=False)
        db.query(AttemptRow).filter(AttemptRow.id.in_(ids)).delete(synchronize_session=False)


class SqlBackend(Backend):

    def __init__(self, database_url: str = config.DATABASE_URL, public_url: str = "http://localhost/storage"):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)
        self.public_url = public_url.rstrip("/")
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"DB 연결: {self.engine.url.render_as_string(hide_password=True)}")

    def _transaction(self, op: Callable[[Session], T]) -> T:
        db = self.SessionLocal()
        try:
            result = op(db)
            db.commit()
            return result
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"유일성 제약 위반: {e.orig}")
            raise DuplicateRecord() from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"DB 오류: {e}")
            raise BackendError() from e
        except ExamProError:
            db.rollback()
            raise
        finally:
            db.close()

    async def _run(self, op: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._transaction, op)

    def dispose(self) -> None:
        self.engine.dispose()

    # ── 인증 ────────────────────────────────────────────────────────────────

    async def sign_in(self, email: str, password: str) -> AuthSession:
        email = email.strip().lower()

        def op(db: Session) -> AuthSession:
            user = db.query(AuthUser).filter(AuthUser.email == email).first()
            if user is None or not pwd_context.verify(password, user.password_hash):
                raise InvalidCredentials()
            session = AuthSession(token=secrets.token_urlsafe(32), account_id=user.id, email=email)
            db.add(AuthSessionRow(**_columns(session)))
            return session

        return await self._run(op)

    async def get_session(self, token: str) -> Optional[AuthSession]:
        def op(db: Session) -> Optional[AuthSession]:
            row = db.get(AuthSessionRow, token)
            return _to_model(AuthSession, row) if row else None

        return await self._run(op)

    async def sign_out(self, token: str) -> None:
        def op(db: Session) -> None:
            db.query(AuthSessionRow).filter(AuthSessionRow.token == token).delete()

        await self._run(op)

    async def create_auth_user(self, email: str, password: str) -> str:
        email = email.strip().lower()

        def op(db: Session) -> str:
            if db.query(AuthUser).filter(AuthUser.email == email).first() is not None:
                raise DuplicateRecord("A user with this email address has already been registered")
            user_id = str(uuid.uuid4())
            db.add(AuthUser(id=user_id, email=email, password_hash=pwd_context.hash(password)))
            return user_id

        return await self._run(op)

    async def delete_auth_user(self, user_id: str) -> None:
        def op(db: Session) -> None:
            db.query(AuthSessionRow).filter(AuthSessionRow.account_id == user_id).delete()
            db.query(AuthUser).filter(AuthUser.id == user_id).delete()

        await self._run(op)

    async def is_admin(self, account_id: str) -> bool:
        def op(db: Session) -> bool:
            row = db.get(AccountRow, account_id)
            return row is not None and row.role == Role.ADMIN.value

        return await self._run(op)

    # ── 계정 ────────────────────────────────────────────────────────────────

    async def get_account(self, account_id: str) -> Optional[Account]:
        def op(db: Session) -> Optional[Account]:
            row = db.get(AccountRow, account_id)
            return _to_model(Account, row) if row else None

        return await self._run(op)

    async def get_account_by_login_id(self, login_id: str) -> Optional[Account]:
        def op(db: Session) -> Optional[Account]:
            row = db.query(AccountRow).filter(AccountRow.login_id == login_id).first()
            return _to_model(Account, row) if row else None

        return await self._run(op)

    async def login_id_exists(self, login_id: str) -> bool:
        return await self.get_account_by_login_id(login_id) is not None

    async def insert_account(self, account: Account) -> Account:
        def op(db: Session) -> Account:
            if db.get(AccountRow, account.id) is not None:
                raise DuplicateRecord("Account already exists")
            if db.query(AccountRow).filter(AccountRow.login_id == account.login_id).first() is not None:
                raise DuplicateRecord(f"Login ID {account.login_id} already exists")
            db.add(AccountRow(**_columns(account)))
            return account.model_copy()

        return await self._run(op)

    async def update_account(self, account_id: str, **fields) -> Account:
        def op(db: Session) -> Account:
            row = db.get(AccountRow, account_id)
            if row is None:
                raise AccountNotFound()
            _assign(row, fields)
            db.flush()
            return _to_model(Account, row)

        return await self._run(op)

    async def delete_account(self, account_id: str) -> None:
        def op(db: Session) -> None:
            row = db.get(AccountRow, account_id)
            if row is None:
                raise AccountNotFound()
            db.query(DeviceRegistrationRow).filter(DeviceRegistrationRow.account_id == account_id).delete()
            db.query(LoginRecordRow).filter(LoginRecordRow.account_id == account_id).delete()
            _drop_attempts(db, AttemptRow.account_id == account_id)
            db.delete(row)

        await self._run(op)

    async def list_accounts(self) -> List[Account]:
        def op(db: Session) -> List[Account]:
            rows = db.query(AccountRow).order_by(AccountRow.created_at.desc()).all()
            return [_to_model(Account, r) for r in rows]

        return await self._run(op)

    # ── 기기 등록 / 로그인 이력 ──────────────────────────────────────────────

    async def get_device_registration(self, fingerprint: str) -> Optional[DeviceRegistration]:
        def op(db: Session) -> Optional[DeviceRegistration]:
            row = db.get(DeviceRegistrationRow, fingerprint)
            return _to_model(DeviceRegistration, row) if row else None

        return await self._run(op)

    async def insert_device_registration(self, registration: DeviceRegistration) -> DeviceRegistration:
        def op(db: Session) -> DeviceRegistration:
            if db.get(DeviceRegistrationRow, registration.device_fingerprint) is not None:
                raise DuplicateRecord("Device already registered")
            db.add(DeviceRegistrationRow(**_columns(registration)))
            return registration.model_copy()

        return await self._run(op)

    async def list_device_registrations(self, account_id: str) -> List[DeviceRegistration]:
        def op(db: Session) -> List[DeviceRegistration]:
            rows = (
                db.query(DeviceRegistrationRow)
                .filter(DeviceRegistrationRow.account_id == account_id)
                .order_by(DeviceRegistrationRow.created_at.desc())
                .all()
            )
            return [_to_model(DeviceRegistration, r) for r in rows]

        return await self._run(op)

    async def insert_login_record(self, record: LoginRecord) -> LoginRecord:
        def op(db: Session) -> LoginRecord:
            db.add(LoginRecordRow(**_columns(record)))
            return record

        return await self._run(op)

    async def list_login_history(self, account_id: str, limit: int = 50) -> List[LoginRecord]:
        def op(db: Session) -> List[LoginRecord]:
            rows = (
                db.query(LoginRecordRow)
                .filter(LoginRecordRow.account_id == account_id)
                .order_by(LoginRecordRow.login_at.desc(), LoginRecordRow.id.desc())
                .limit(limit)
                .all()
            )
            return [_to_model(LoginRecord, r) for r in rows]

        return await self._run(op)

    # ── 시험 / 지문 / 문제 ───────────────────────────────────────────────────

    async def get_exam(self, exam_id: str) -> Optional[Exam]:
        def op(db: Session) -> Optional[Exam]:
            row = db.get(ExamRow, exam_id)
            return _to_model(Exam, row) if row else None

        return await self._run(op)

    async def list_exams(self, published_only: bool = False) -> List[Exam]:
        def op(db: Session) -> List[Exam]:
            query = db.query(ExamRow)
            if published_only:
                query = query.filter(ExamRow.is_published.is_(True))
            return [_to_model(Exam, r) for r in query.order_by(ExamRow.created_at.desc()).all()]

        return await self._run(op)

    async def insert_exam(self, exam: Exam) -> Exam:
        def op(db: Session) -> Exam:
            if db.get(ExamRow, exam.id) is not None:
                raise DuplicateRecord("Exam already exists")
            db.add(ExamRow(**_columns(exam)))
            return exam.model_copy()

        return await self._run(op)

    async def update_exam(self, exam_id: str, **fields) -> Exam:
        def op(db: Session) -> Exam:
            row = db.get(ExamRow, exam_id)
            if row is None:
                raise ExamNotFound()
            _assign(row, fields)
            db.flush()
            return _to_model(Exam, row)

        return await self._run(op)

    async def delete_exam(self, exam_id: str) -> None:
        def op(db: Session) -> None:
            row = db.get(ExamRow, exam_id)
            if row is None:
                raise ExamNotFound()
            _drop_attempts(db, AttemptRow.exam_id == exam_id)
            db.query(QuestionRow).filter(QuestionRow.exam_id == exam_id).delete()
            db.query(PassageRow).filter(PassageRow.exam_id == exam_id).delete()
            db.delete(row)

        await self._run(op)

    async def list_passages(self, exam_id: str) -> List[Passage]:
        def op(db: Session) -> List[Passage]:
            rows = (
                db.query(PassageRow)
                .filter(PassageRow.exam_id == exam_id)
                .order_by(PassageRow.order_index)
                .all()
            )
            return [_to_model(Passage, r) for r in rows]

        return await self._run(op)

    async def insert_passage(self, passage: Passage) -> Passage:
        def op(db: Session) -> Passage:
            if db.get(ExamRow, passage.exam_id) is None:
                raise ExamNotFound()
            db.add(PassageRow(**_columns(passage)))
            return passage.model_copy()

        return await self._run(op)

    async def get_question(self, question_id: str) -> Optional[Question]:
        def op(db: Session) -> Optional[Question]:
            row = db.get(QuestionRow, question_id)
            return _to_model(Question, row) if row else None

        return await self._run(op)

    async def list_questions(self, exam_id: str) -> List[Question]:
        def op(db: Session) -> List[Question]:
            rows = (
                db.query(QuestionRow)
                .filter(QuestionRow.exam_id == exam_id)
                .order_by(QuestionRow.order_index)
                .all()
            )
            return [_to_model(Question, r) for r in rows]

        return await self._run(op)

    async def insert_questions(self, questions: List[Question]) -> List[Question]:
        def op(db: Session) -> List[Question]:
            for q in questions:
                if db.get(ExamRow, q.exam_id) is None:
                    raise ExamNotFound()
                if q.passage_id and db.get(PassageRow, q.passage_id) is None:
                    raise BackendError(f"Passage {q.passage_id} does not exist")
            db.add_all([QuestionRow(**_columns(q)) for q in questions])
            return [q.model_copy() for q in questions]

        return await self._run(op)

    async def update_question(self, question_id: str, **fields) -> Question:
        def op(db: Session) -> Question:
            row = db.get(QuestionRow, question_id)
            if row is None:
                raise QuestionNotFound()
            _assign(row, fields)
            db.flush()
            return _to_model(Question, row)

        return await self._run(op)

    async def delete_question(self, question_id: str) -> None:
        def op(db: Session) -> None:
            row = db.get(QuestionRow, question_id)
            if row is None:
                raise QuestionNotFound()
            db.delete(row)

        await self._run(op)

    # ── 응시 기록 / 답안 ────────────────────────────────────────────────────

    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        def op(db: Session) -> Optional[Attempt]:
            row = db.get(AttemptRow, attempt_id)
            return _to_model(Attempt, row) if row else None

        return await self._run(op)

    async def list_attempts(
        self,
        account_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> List[Attempt]:
        def op(db: Session) -> List[Attempt]:
            query = db.query(AttemptRow)
            if account_id is not None:
                query = query.filter(AttemptRow.account_id == account_id)
            if exam_id is not None:
                query = query.filter(AttemptRow.exam_id == exam_id)
            if completed is True:
                query = query.filter(AttemptRow.completed_at.isnot(None))
            elif completed is False:
                query = query.filter(AttemptRow.completed_at.is_(None))
            return [_to_model(Attempt, r) for r in query.order_by(AttemptRow.started_at.desc()).all()]

        return await self._run(op)

    async def insert_attempt(self, attempt: Attempt) -> Attempt:
        def op(db: Session) -> Attempt:
            if db.get(ExamRow, attempt.exam_id) is None:
                raise ExamNotFound()
            db.add(AttemptRow(**_columns(attempt)))
            return attempt.model_copy()

        return await self._run(op)

    async def update_attempt(self, attempt_id: str, **fields) -> Attempt:
        def op(db: Session) -> Attempt:
            row = db.get(AttemptRow, attempt_id)
            if row is None:
                raise AttemptNotFound()
            if fields.get("completed_at") is not None:
                other = (
                    db.query(AttemptRow.id)
                    .filter(
                        AttemptRow.account_id == row.account_id,
                        AttemptRow.exam_id == row.exam_id,
                        AttemptRow.id != row.id,
                        AttemptRow.completed_at.isnot(None),
                    )
                    .first()
                )
                if other is not None:
                    raise DuplicateRecord("Exam already completed for this account")
            _assign(row, fields)
            db.flush()
            return _to_model(Attempt, row)

        return await self._run(op)

    async def delete_attempt(self, attempt_id: str) -> None:
        def op(db: Session) -> None:
            if db.get(AttemptRow, attempt_id) is None:
                raise AttemptNotFound()
            _drop_attempts(db, AttemptRow.id == attempt_id)

        await self._run(op)

    async def insert_answers(self, answers: List[Answer]) -> List[Answer]:
        def op(db: Session) -> List[Answer]:
            for attempt_id in {a.attempt_id for a in answers}:
                if db.get(AttemptRow, attempt_id) is None:
                    raise AttemptNotFound()
                existing = db.query(AnswerRow.question_id).filter(AnswerRow.attempt_id == attempt_id).all()
                recorded = {r.question_id for r in existing}
                if any(a.question_id in recorded for a in answers if a.attempt_id == attempt_id):
                    raise DuplicateRecord("Answer already recorded for this question")
            db.add_all([AnswerRow(**_columns(a)) for a in answers])
            return [a.model_copy() for a in answers]

        return await self._run(op)

    async def list_answers(self, attempt_id: str) -> List[Answer]:
        def op(db: Session) -> List[Answer]:
            rows = db.query(AnswerRow).filter(AnswerRow.attempt_id == attempt_id).all()
            return [_to_model(Answer, r) for r in rows]

        return await self._run(op)

    async def delete_answers(self, attempt_id: str) -> int:
        def op(db: Session) -> int:
            return db.query(AnswerRow).filter(AnswerRow.attempt_id == attempt_id).delete()

        return await self._run(op)

    # ── 문의 / 파일 ─────────────────────────────────────────────────────────

    async def insert_contact_message(self, message: ContactMessage) -> ContactMessage:
        def op(db: Session) -> ContactMessage:
            db.add(ContactMessageRow(**_columns(message)))
            return message.model_copy()

        return await self._run(op)

    async def list_contact_messages(self) -> List[ContactMessage]:
        def op(db: Session) -> List[ContactMessage]:
            rows = db.query(ContactMessageRow).order_by(ContactMessageRow.created_at.desc()).all()
            return [_to_model(ContactMessage, r) for r in rows]

        return await self._run(op)

    async def mark_contact_message_read(self, message_id: str) -> ContactMessage:
        def op(db: Session) -> ContactMessage:
            row = db.get(ContactMessageRow, message_id)
            if row is None:
                raise BackendError("Message not found")
            row.is_read = True
            db.flush()
            return _to_model(ContactMessage, row)

        return await self._run(op)

    async def upload_file(self, bucket: str, path: str, data: bytes) -> str:
        key = f"{bucket}/{path.lstrip('/')}"

        def op(db: Session) -> None:
            db.merge(StoredFile(key=key, data=bytes(data)))

        await self._run(op)
        return f"{self.public_url}/{key}"

    async def get_file(self, bucket: str, path: str) -> Optional[bytes]:
        key = f"{bucket}/{path.lstrip('/')}"

        def op(db: Session) -> Optional[bytes]:
            row = db.get(StoredFile, key)
            return bytes(row.data) if row else None

        return await self._run(op)
