"""
models/exam.py

시험 출제 단위(Exam / Passage / Question) 모델.
Pydantic v2 적용 — 문제 입력 폼 검증은 여기서 끝난다.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from exampro.models.account import utcnow

OPTION_LETTERS = ("A", "B", "C", "D")

# 학년/과목 필터에서 모든 값과 일치하는 값
GENERAL = "general"


def new_id() -> str:
    return str(uuid.uuid4())


class Exam(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = Field(..., min_length=1, description="시험 제목")
    description: Optional[str] = Field(None, description="시험 설명")
    duration_minutes: int = Field(..., gt=0, description="제한 시간 (분)")
    passing_score: int = Field(70, ge=0, le=100, description="합격 기준 (%)")
    grade: Optional[str] = Field(None, description="대상 학년/반 (None 또는 general = 전체)")
    subject: Optional[str] = Field(None, description="과목 (None 또는 general = 전체)")
    is_published: bool = Field(False, description="학생에게 공개 여부")
    created_by: Optional[str] = Field(None, description="작성한 관리자 계정 ID")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Passage(BaseModel):
    """여러 문제가 공유하는 독해 지문."""

    id: str = Field(default_factory=new_id)
    exam_id: str
    title: Optional[str] = None
    content: str = Field(..., min_length=1, description="지문 본문")
    image_url: Optional[str] = None
    order_index: int = 0


class Question(BaseModel):
    """
    객관식 문제 모델.
    보기는 2개(참/거짓, 양자택일) 또는 3~4개. 앞에서부터 빈칸 없이 채워야 한다.
    """

    id: str = Field(default_factory=new_id)
    exam_id: str
    passage_id: Optional[str] = Field(None, description="공유 지문 ID (없으면 단독 문제)")
    question_text: str = Field(..., min_length=1, description="발문")
    image_url: Optional[str] = None
    option_a: Optional[str] = None
    option_b: Optional[str] = None
    option_c: Optional[str] = None
    option_d: Optional[str] = None
    correct_answer: str = Field(..., description="정답 보기 문자 (A-D)")
    order_index: int = 0
    points: int = Field(1, ge=0, description="배점")

    @field_validator("correct_answer")
    @classmethod
    def normalize_correct_answer(cls, v: str) -> str:
        letter = v.strip().upper()
        if letter not in OPTION_LETTERS:
            raise ValueError(f"정답은 A-D 중 하나여야 합니다: {v!r}")
        return letter

    @model_validator(mode="after")
    def validate_options(self) -> "Question":
        """
        검증 로직 1: 보기 A, B는 필수이며 중간에 빈 보기가 있으면 안 된다.
        검증 로직 2: 정답은 채워진 보기를 가리켜야 한다.
        """
        filled = [bool(text and text.strip()) for text in self.option_texts().values()]
        if not (filled[0] and filled[1]):
            raise ValueError("보기 A와 B는 반드시 입력해야 합니다.")
        if filled[3] and not filled[2]:
            raise ValueError("보기 C 없이 보기 D를 입력할 수 없습니다.")
        if self.correct_answer not in self.available_letters():
            raise ValueError(
                f"정답('{self.correct_answer}')이 입력된 보기({self.available_letters()})에 없습니다."
            )
        return self

    def option_texts(self) -> Dict[str, Optional[str]]:
        return {
            "A": self.option_a,
            "B": self.option_b,
            "C": self.option_c,
            "D": self.option_d,
        }

    def available_letters(self) -> List[str]:
        return [letter for letter, text in self.option_texts().items() if text and text.strip()]
