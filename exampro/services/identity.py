"""
services/identity.py

로그인 코드 → 계정 확인, 비밀번호 인증, 1기기 1계정 제한.

Public API:
  - derive_fingerprint(signals) -> str
  - IdentityGate.login(login_id, password, fingerprint) -> AuthSession
  - IdentityGate.admin_login(email, password) -> AuthSession
  - IdentityGate.logout(token)
  - IdentityGate.current_account(token) / require_admin(token) -> Account

기기 지문은 처음 로그인에 성공한 계정에 영구적으로 묶인다.
같은 지문으로 다른 계정에 로그인하면 방금 만든 세션을 즉시 종료하고 DeviceConflict.
"""

import hashlib
import logging
from typing import Mapping, Optional

from exampro.models.account import Account, AuthSession, DeviceRegistration, LoginRecord
from exampro.services.backend import Backend
from exampro.services.errors import (
    AdminRequired, DeviceConflict, DuplicateRecord, InvalidCredentials,
    InvalidLoginId, NotAuthenticated,
)

logger = logging.getLogger(__name__)

_FINGERPRINT_LENGTH = 16


def normalize_login_id(login_id: str) -> str:
    return (login_id or "").strip().upper()


def derive_fingerprint(signals: Mapping[str, str]) -> str:
    """
    브라우저/기기 신호(화면 크기, 언어, 플랫폼, 시간대, User-Agent 등)를
    해시해 짧은 기기 토큰을 만든다. 같은 신호면 항상 같은 값.
    보안 자격 증명이 아니라 최선 노력 수준의 기기 식별자.
    """
    joined = "|".join(f"{key}={signals[key]}" for key in sorted(signals))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:_FINGERPRINT_LENGTH]


class IdentityGate:

    def __init__(self, backend: Backend):
        self.backend = backend

    async def login(self, login_id: str, password: str, fingerprint: str) -> AuthSession:
        """학생 로그인. 실패는 InvalidLoginId / InvalidCredentials / DeviceConflict 중 하나."""
        code = normalize_login_id(login_id)
        account = await self.backend.get_account_by_login_id(code) if code else None
        if account is None:
            raise InvalidLoginId()

        try:
            session = await self.backend.sign_in(account.email, password)
        except InvalidCredentials:
            logger.info(f"로그인 실패 (비밀번호 불일치): {code}")
            raise

        try:
            await self._bind_device(account, fingerprint)
            await self.backend.insert_login_record(
                LoginRecord(account_id=account.id, device_fingerprint=fingerprint)
            )
        except Exception:
            # 방금 만든 세션이 남지 않도록 종료
            await self.backend.sign_out(session.token)
            raise
        logger.info(f"로그인 성공: {code}")
        return session

    async def _bind_device(self, account: Account, fingerprint: str) -> None:
        existing = await self.backend.get_device_registration(fingerprint)
        if existing is None:
            try:
                await self.backend.insert_device_registration(
                    DeviceRegistration(account_id=account.id, device_fingerprint=fingerprint)
                )
                logger.info(f"새 기기 등록: {account.login_id} ({fingerprint})")
                return
            except DuplicateRecord:
                # 동시 로그인이 먼저 등록함 → 승자를 다시 읽어 판정
                existing = await self.backend.get_device_registration(fingerprint)

        if existing is not None and existing.account_id != account.id:
            logger.warning(
                f"기기 충돌: {fingerprint}는 다른 계정에 등록됨 (시도 계정 {account.login_id})"
            )
            raise DeviceConflict()

    async def admin_login(self, email: str, password: str) -> AuthSession:
        """관리자 로그인. 관리자가 아니면 세션을 종료하고 AdminRequired."""
        session = await self.backend.sign_in(email.strip(), password)
        try:
            admin = await self.backend.is_admin(session.account_id)
        except Exception:
            await self.backend.sign_out(session.token)
            raise
        if not admin:
            await self.backend.sign_out(session.token)
            raise AdminRequired("Access denied. Teacher/Admin account required.")
        return session

    async def logout(self, token: str) -> None:
        await self.backend.sign_out(token)

    async def current_account(self, token: Optional[str]) -> Account:
        session = await self.backend.get_session(token) if token else None
        if session is None:
            raise NotAuthenticated()
        account = await self.backend.get_account(session.account_id)
        if account is None:
            raise NotAuthenticated()
        return account

    async def require_admin(self, token: Optional[str]) -> Account:
        account = await self.current_account(token)
        if not await self.backend.is_admin(account.id):
            raise AdminRequired()
        return account
