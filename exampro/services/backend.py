"""
services/backend.py

원격 백엔드(데이터베이스 + 인증 + 파일 저장소) 협력자 인터페이스.

모든 컴포넌트는 이 클라이언트를 생성자로 주입받는다 (전역 클라이언트 없음).
모든 메서드는 비동기이며, 호출 중에도 타이머와 다른 요청은 계속 진행된다.
실패 시 BackendError(또는 하위 클래스)를 던진다.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from exampro.models.account import (
    Account, AuthSession, DeviceRegistration, LoginRecord, Role,
)
from exampro.models.attempt import Answer, Attempt
from exampro.models.contact import ContactMessage
from exampro.models.exam import Exam, Passage, Question

logger = logging.getLogger(__name__)


class Backend(ABC):
    """백엔드 협력자. 구현체는 InMemoryBackend(테스트용), SqlBackend(운영용)."""

    # ── 인증 ────────────────────────────────────────────────────────────────

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession:
        """이메일/비밀번호 로그인. 실패 시 InvalidCredentials."""
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, token: str) -> Optional[AuthSession]:
        raise NotImplementedError

    @abstractmethod
    async def sign_out(self, token: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def create_auth_user(self, email: str, password: str) -> str:
        """인증 사용자 생성 후 사용자 ID 반환. 이메일 중복 시 DuplicateRecord."""
        raise NotImplementedError

    @abstractmethod
    async def delete_auth_user(self, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def is_admin(self, account_id: str) -> bool:
        raise NotImplementedError

    async def bootstrap_admin(self, email: str, password: str, full_name: str = "Administrator") -> Account:
        """관리자 계정이 없으면 생성 (앱 시작 시 1회). 이미 있으면 그 계정을 돌려준다."""
        from exampro.services.accounts import generate_login_id

        email = email.strip().lower()
        for account in await self.list_accounts():
            if account.email == email:
                return account
        user_id = await self.create_auth_user(email, password)
        account = Account(
            id=user_id,
            login_id=generate_login_id(),
            full_name=full_name,
            email=email,
            role=Role.ADMIN,
        )
        logger.info(f"관리자 계정 생성: {email}")
        return await self.insert_account(account)

    # ── 계정 ────────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        raise NotImplementedError

    @abstractmethod
    async def get_account_by_login_id(self, login_id: str) -> Optional[Account]:
        raise NotImplementedError

    @abstractmethod
    async def login_id_exists(self, login_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def insert_account(self, account: Account) -> Account:
        raise NotImplementedError

    @abstractmethod
    async def update_account(self, account_id: str, **fields) -> Account:
        raise NotImplementedError

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        """프로필과 기기 등록, 로그인 이력, 응시 기록, 답안까지 함께 삭제."""
        raise NotImplementedError

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        raise NotImplementedError

    # ── 기기 등록 / 로그인 이력 ──────────────────────────────────────────────

    @abstractmethod
    async def get_device_registration(self, fingerprint: str) -> Optional[DeviceRegistration]:
        raise NotImplementedError

    @abstractmethod
    async def insert_device_registration(self, registration: DeviceRegistration) -> DeviceRegistration:
        """지문 유일성 제약. 이미 있으면 DuplicateRecord."""
        raise NotImplementedError

    @abstractmethod
    async def list_device_registrations(self, account_id: str) -> List[DeviceRegistration]:
        raise NotImplementedError

    @abstractmethod
    async def insert_login_record(self, record: LoginRecord) -> LoginRecord:
        raise NotImplementedError

    @abstractmethod
    async def list_login_history(self, account_id: str, limit: int = 50) -> List[LoginRecord]:
        raise NotImplementedError

    # ── 시험 / 지문 / 문제 ───────────────────────────────────────────────────

    @abstractmethod
    async def get_exam(self, exam_id: str) -> Optional[Exam]:
        raise NotImplementedError

    @abstractmethod
    async def list_exams(self, published_only: bool = False) -> List[Exam]:
        raise NotImplementedError

    @abstractmethod
    async def insert_exam(self, exam: Exam) -> Exam:
        raise NotImplementedError

    @abstractmethod
    async def update_exam(self, exam_id: str, **fields) -> Exam:
        raise NotImplementedError

    @abstractmethod
    async def delete_exam(self, exam_id: str) -> None:
        """지문, 문제, 응시 기록, 답안까지 연쇄 삭제."""
        raise NotImplementedError

    @abstractmethod
    async def list_passages(self, exam_id: str) -> List[Passage]:
        """order_index 오름차순."""
        raise NotImplementedError

    @abstractmethod
    async def insert_passage(self, passage: Passage) -> Passage:
        raise NotImplementedError

    @abstractmethod
    async def get_question(self, question_id: str) -> Optional[Question]:
        raise NotImplementedError

    @abstractmethod
    async def list_questions(self, exam_id: str) -> List[Question]:
        """order_index 오름차순."""
        raise NotImplementedError

    @abstractmethod
    async def insert_questions(self, questions: List[Question]) -> List[Question]:
        raise NotImplementedError

    @abstractmethod
    async def update_question(self, question_id: str, **fields) -> Question:
        """없으면 QuestionNotFound."""
        raise NotImplementedError

    @abstractmethod
    async def delete_question(self, question_id: str) -> None:
        """없으면 QuestionNotFound."""
        raise NotImplementedError

    # ── 응시 기록 / 답안 ────────────────────────────────────────────────────

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def list_attempts(
        self,
        account_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> List[Attempt]:
        """started_at 내림차순. completed=None이면 완료 여부 무관."""
        raise NotImplementedError

    @abstractmethod
    async def insert_attempt(self, attempt: Attempt) -> Attempt:
        raise NotImplementedError

    @abstractmethod
    async def update_attempt(self, attempt_id: str, **fields) -> Attempt:
        """
        completed_at을 채우려는데 같은 (계정, 시험)에 이미 완료된 다른 응시 기록이 있으면
        DuplicateRecord. 완료 기록은 (계정, 시험)당 최대 1개.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete_attempt(self, attempt_id: str) -> None:
        """답안까지 함께 삭제."""
        raise NotImplementedError

    @abstractmethod
    async def insert_answers(self, answers: List[Answer]) -> List[Answer]:
        """일괄 삽입. 전부 성공하거나 전부 실패한다."""
        raise NotImplementedError

    @abstractmethod
    async def list_answers(self, attempt_id: str) -> List[Answer]:
        raise NotImplementedError

    @abstractmethod
    async def delete_answers(self, attempt_id: str) -> int:
        raise NotImplementedError

    # ── 문의 / 파일 ─────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_contact_message(self, message: ContactMessage) -> ContactMessage:
        raise NotImplementedError

    @abstractmethod
    async def list_contact_messages(self) -> List[ContactMessage]:
        raise NotImplementedError

    @abstractmethod
    async def mark_contact_message_read(self, message_id: str) -> ContactMessage:
        raise NotImplementedError

    @abstractmethod
    async def upload_file(self, bucket: str, path: str, data: bytes) -> str:
        """파일을 업로드하고 공개 URL을 반환."""
        raise NotImplementedError

    @abstractmethod
    async def get_file(self, bucket: str, path: str) -> Optional[bytes]:
        raise NotImplementedError
