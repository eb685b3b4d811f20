"""
models/attempt.py

응시 기록(Attempt)과 답안(Answer) 모델.
completed_at이 None이면 진행 중, 값이 있으면 완료(이후 불변).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from exampro.models.account import utcnow
from exampro.models.exam import new_id


class Attempt(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    exam_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(None, description="완료 시각 (None = 진행 중)")
    total_questions: int = Field(..., ge=0, description="시작 시점의 문제 수 스냅샷")
    correct_answers: Optional[int] = None
    score: Optional[int] = Field(None, description="배점 합계 원점수")
    percentage: Optional[float] = None
    time_taken_seconds: Optional[int] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class Answer(BaseModel):
    """(attempt, question)당 1행. 제출 시 일괄 생성되며 이후 수정되지 않는다."""

    id: str = Field(default_factory=new_id)
    attempt_id: str
    question_id: str
    selected_answer: Optional[str] = Field(None, description="선택한 보기 (None = 미응답)")
    is_correct: Optional[bool] = None
