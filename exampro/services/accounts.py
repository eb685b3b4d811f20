"""
services/accounts.py

계정 생성/삭제 협력자 (관리자 전용).

로그인 코드는 혼동되는 문자(0, O, 1, I)를 뺀 32자 알파벳에서 8자리로 만든다.
충돌하면 정해진 횟수만큼 다시 뽑고, 끝내 유일한 코드를 못 찾으면 실패한다.
백엔드 인증은 로그인 코드에서 합성한 내부 이메일로 등록한다.
"""

import logging
import random
import secrets
from typing import Any, Dict, NamedTuple, Optional

import config
from exampro.models.account import Account
from exampro.services.backend import Backend
from exampro.services.errors import (
    AccountNotFound, BackendError, LoginIdExhausted, ValidationFailed,
)
from exampro.services.identity import IdentityGate

logger = logging.getLogger(__name__)


class CreatedAccount(NamedTuple):
    login_id: str
    account: Account


def generate_login_id(rng: Optional[random.Random] = None) -> str:
    rng = rng or secrets.SystemRandom()
    return "".join(rng.choice(config.LOGIN_ID_ALPHABET) for _ in range(config.LOGIN_ID_LENGTH))


def internal_email(login_id: str) -> str:
    return f"{login_id.lower()}@{config.INTERNAL_EMAIL_DOMAIN}"


class AccountService:

    def __init__(self, backend: Backend, rng: Optional[random.Random] = None):
        self.backend = backend
        self.identity = IdentityGate(backend)
        self.rng = rng

    async def _allocate_login_id(self) -> str:
        for _ in range(config.LOGIN_ID_MAX_ATTEMPTS):
            candidate = generate_login_id(self.rng)
            if not await self.backend.login_id_exists(candidate):
                return candidate
        raise LoginIdExhausted()

    async def create_account(
        self,
        admin_token: str,
        full_name: str,
        password: Optional[str] = None,
        phone: Optional[str] = None,
        class_name: Optional[str] = None,
    ) -> CreatedAccount:
        """
        학생 계정을 만든다.

        Args:
            admin_token: 요청한 관리자의 세션 토큰.
            full_name:   이름 (필수).
            password:    초기 비밀번호. 없으면 로그인 코드 자체가 비밀번호.
            phone:       전화번호 (선택).
            class_name:  학년/반 (선택).

        Returns:
            CreatedAccount(login_id, account)
        """
        await self.identity.require_admin(admin_token)

        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationFailed("Full name is required")

        login_id = await self._allocate_login_id()
        email = internal_email(login_id)
        user_id = await self.backend.create_auth_user(email, password or login_id)

        account = Account(
            id=user_id,
            login_id=login_id,
            full_name=full_name,
            email=email,
            phone=(phone or "").strip() or None,
            class_name=(class_name or "").strip() or None,
        )
        try:
            account = await self.backend.insert_account(account)
        except BackendError:
            # 프로필 생성 실패 시 인증 사용자만 남지 않도록 정리
            logger.error(f"프로필 생성 실패, 인증 사용자 삭제: {login_id}")
            await self.backend.delete_auth_user(user_id)
            raise

        logger.info(f"계정 생성 완료: {account.id} (로그인 ID {login_id})")
        return CreatedAccount(login_id, account)

    async def update_profile(
        self,
        admin_token: str,
        account_id: str,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        class_name: Optional[str] = None,
    ) -> Account:
        """이름/전화번호/학년·반 수정. 로그인 ID와 이메일은 바꾸지 않는다."""
        await self.identity.require_admin(admin_token)
        fields: Dict[str, Any] = {}
        if full_name is not None:
            if not full_name.strip():
                raise ValidationFailed("Full name is required")
            fields["full_name"] = full_name.strip()
        if phone is not None:
            fields["phone"] = phone.strip() or None
        if class_name is not None:
            fields["class_name"] = class_name.strip() or None
        return await self.backend.update_account(account_id, **fields)

    async def delete_account(self, admin_token: str, account_id: str) -> None:
        """프로필, 인증 정보, 기기 등록, 로그인 이력, 응시 기록을 모두 삭제."""
        await self.identity.require_admin(admin_token)
        await self.backend.delete_account(account_id)
        await self.backend.delete_auth_user(account_id)
        logger.info(f"계정 삭제: {account_id}")

    async def account_details(self, admin_token: str, account_id: str) -> Dict[str, Any]:
        """관리자 상세 화면: 응시 기록(시험 제목 포함), 로그인 이력, 등록 기기."""
        await self.identity.require_admin(admin_token)
        account = await self.backend.get_account(account_id)
        if account is None:
            raise AccountNotFound()

        attempts = await self.backend.list_attempts(account_id=account_id)
        titles: Dict[str, str] = {}
        for exam_id in {a.exam_id for a in attempts}:
            exam = await self.backend.get_exam(exam_id)
            if exam is not None:
                titles[exam_id] = exam.title

        return {
            "account": account,
            "attempts": [
                {**a.model_dump(mode="json"), "exam_title": titles.get(a.exam_id, "Unknown Exam")}
                for a in attempts
            ],
            "login_history": await self.backend.list_login_history(account_id, limit=50),
            "devices": await self.backend.list_device_registrations(account_id),
        }
