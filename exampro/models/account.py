"""
models/account.py

계정, 기기 등록, 로그인 이력, 인증 세션 모델.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    STUDENT = "student"


class Account(BaseModel):
    """
    학생/관리자 계정 프로필.
    로그인 코드(login_id)는 사람이 입력하는 8자리 식별자이며,
    백엔드 인증은 login_id에서 합성된 내부 이메일로 이루어진다.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="계정 고유 ID (백엔드 인증 사용자 ID와 동일)")
    login_id: str = Field(..., min_length=1, description="8자리 로그인 코드 (대문자)")
    full_name: str = Field(..., min_length=1, description="표시 이름")
    email: str = Field(..., description="백엔드 인증용 내부 이메일")
    phone: Optional[str] = Field(None, description="전화번호 (선택)")
    class_name: Optional[str] = Field(
        None, alias="class", description="학년/반 태그"
    )
    role: Role = Field(default=Role.STUDENT, description="역할")
    created_at: datetime = Field(default_factory=utcnow)


class DeviceRegistration(BaseModel):
    """기기 지문과 계정의 영구 바인딩. 지문당 최대 1행."""

    account_id: str
    device_fingerprint: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)


class LoginRecord(BaseModel):
    """학생 로그인 이력 (관리자 상세 화면용)."""

    account_id: str
    device_fingerprint: Optional[str] = None
    login_at: datetime = Field(default_factory=utcnow)


class AuthSession(BaseModel):
    """백엔드 인증 서비스가 발급한 세션."""

    token: str
    account_id: str
    email: str
    created_at: datetime = Field(default_factory=utcnow)
