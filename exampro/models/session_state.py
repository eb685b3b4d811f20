"""
models/session_state.py

시험 진행 상태를 담는 OMR 카드 모델.
Pydantic BaseModel 기반 — 직렬화/역직렬화 및 타입 안전성 확보.
UI 코드 없음. 실제 상태 전이는 services/exam_session.py가 담당한다.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    EXPIRED = "expired"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class ExamState(BaseModel):
    """
    사용자의 시험 세션 전체 상태를 표현하는 모델.

    Attributes:
        state:               현재 상태 머신 단계.
        current_quest_index: 현재 풀고 있는 문제의 인덱스 (0-based).
        user_answers:        사용자 답안지. {question.id: 선택한 보기 문자}
                             미응답 문제는 키가 없다.
        remaining_seconds:   남은 시간 (초).
        attempt_id:          백엔드에 생성된 응시 기록 ID.
    """

    state: SessionState = Field(default=SessionState.LOADING)
    current_quest_index: int = Field(
        default=0,
        ge=0,
        description="현재 풀고 있는 문제 인덱스 (0-based)"
    )
    user_answers: Dict[str, str] = Field(
        default_factory=dict,
        description="사용자 답안지. key: question.id, value: 선택한 보기 문자"
    )
    remaining_seconds: int = Field(default=0, ge=0, description="남은 시간 (초)")
    attempt_id: Optional[str] = Field(default=None, description="응시 기록 ID")
    total: int = Field(default=0, ge=0)

    @property
    def is_submitted(self) -> bool:
        return self.state == SessionState.COMPLETED
