"""
services/admin.py

관리자 작업: 재응시 허가, 미완료 응시 정리, 시험 출제 CRUD와 이미지 업로드, 문의함.
출제 CRUD는 모델 검증 후 백엔드에 그대로 넘기는 얇은 계층이다.
"""

import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

import config
from exampro.models.account import utcnow
from exampro.models.contact import ContactMessage
from exampro.models.exam import Exam, Passage, Question, new_id
from exampro.services.backend import Backend
from exampro.services.errors import (
    AttemptNotFound, ExamNotFound, QuestionNotFound, SessionNotActive,
    ValidationFailed,
)
from exampro.services.exam_session import purge_abandoned_attempts
from exampro.services.identity import IdentityGate

logger = logging.getLogger(__name__)


class ExamPreview(BaseModel):
    exam: Exam
    passages: List[Passage]
    questions: List[Question]


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0]
    return str(first.get("msg", "Invalid input"))


class AdminService:

    def __init__(self, backend: Backend):
        self.backend = backend
        self.identity = IdentityGate(backend)

    # ── 응시 기록 ───────────────────────────────────────────────────────────

    async def grant_retake(self, admin_token: str, attempt_id: str) -> None:
        """완료된 응시 기록(과 답안)을 삭제해 다시 응시할 수 있게 한다."""
        await self.identity.require_admin(admin_token)
        attempt = await self.backend.get_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFound()
        if not attempt.is_completed:
            raise SessionNotActive("Only completed attempts can be reset for a retake")
        await self.backend.delete_attempt(attempt_id)
        logger.info(f"재응시 허가: 계정 {attempt.account_id} / 시험 {attempt.exam_id}")

    async def purge_abandoned(self, admin_token: str, max_age_minutes: int) -> int:
        await self.identity.require_admin(admin_token)
        return await purge_abandoned_attempts(
            self.backend, utcnow() - timedelta(minutes=max_age_minutes)
        )

    # ── 출제 ────────────────────────────────────────────────────────────────

    async def list_exams(self, admin_token: str) -> List[Exam]:
        """비공개 시험을 포함한 전체 시험 (최신순)."""
        await self.identity.require_admin(admin_token)
        return await self.backend.list_exams(published_only=False)

    async def preview_exam(self, admin_token: str, exam_id: str) -> ExamPreview:
        """관리자 미리보기: 공개 여부와 관계없이 정답까지 포함한다."""
        await self.identity.require_admin(admin_token)
        exam = await self.backend.get_exam(exam_id)
        if exam is None:
            raise ExamNotFound()
        return ExamPreview(
            exam=exam,
            passages=await self.backend.list_passages(exam_id),
            questions=await self.backend.list_questions(exam_id),
        )

    async def create_exam(self, admin_token: str, data: Dict[str, Any]) -> Exam:
        admin = await self.identity.require_admin(admin_token)
        try:
            exam = Exam(**{**data, "created_by": admin.id})
        except ValidationError as e:
            raise ValidationFailed(_validation_message(e)) from e
        return await self.backend.insert_exam(exam)

    async def update_exam(self, admin_token: str, exam_id: str, **fields) -> Exam:
        await self.identity.require_admin(admin_token)
        exam = await self.backend.get_exam(exam_id)
        if exam is None:
            raise ExamNotFound()
        try:
            Exam(**{**exam.model_dump(), **fields})
        except ValidationError as e:
            raise ValidationFailed(_validation_message(e)) from e
        return await self.backend.update_exam(exam_id, updated_at=utcnow(), **fields)

    async def delete_exam(self, admin_token: str, exam_id: str) -> None:
        await self.identity.require_admin(admin_token)
        await self.backend.delete_exam(exam_id)
        logger.info(f"시험 삭제 (문제/지문/응시 기록 포함): {exam_id}")

    async def add_passage(self, admin_token: str, exam_id: str, data: Dict[str, Any]) -> Passage:
        await self.identity.require_admin(admin_token)
        try:
            passage = Passage(**{**data, "exam_id": exam_id})
        except ValidationError as e:
            raise ValidationFailed(_validation_message(e)) from e
        return await self.backend.insert_passage(passage)

    async def add_questions(
        self, admin_token: str, exam_id: str, items: List[Dict[str, Any]]
    ) -> List[Question]:
        """문제 폼 여러 개를 한 번에 추가. 하나라도 불완전하면 아무것도 저장하지 않는다."""
        await self.identity.require_admin(admin_token)
        if await self.backend.get_exam(exam_id) is None:
            raise ExamNotFound()
        if not items:
            raise ValidationFailed("Please fill in at least one complete question")

        offset = len(await self.backend.list_questions(exam_id))
        questions = []
        for i, item in enumerate(items):
            try:
                questions.append(Question(**{"order_index": offset + i, **item, "exam_id": exam_id}))
            except ValidationError as e:
                raise ValidationFailed(f"Question {i + 1}: {_validation_message(e)}") from e
        return await self.backend.insert_questions(questions)

    async def delete_question(self, admin_token: str, question_id: str) -> None:
        await self.identity.require_admin(admin_token)
        await self.backend.delete_question(question_id)
        logger.info(f"문제 삭제: {question_id}")

    async def update_question(self, admin_token: str, question_id: str, **fields) -> Question:
        """문제 수정. 바꾼 결과 전체를 다시 검증한다. 시험은 옮길 수 없다."""
        await self.identity.require_admin(admin_token)
        question = await self.backend.get_question(question_id)
        if question is None:
            raise QuestionNotFound()
        fields.pop("exam_id", None)
        fields.pop("id", None)
        try:
            checked = Question(**{**question.model_dump(), **fields})
        except ValidationError as e:
            raise ValidationFailed(_validation_message(e)) from e
        changes = {key: getattr(checked, key) for key in fields if key in Question.model_fields}
        return await self.backend.update_question(question_id, **changes)

    async def upload_image(self, admin_token: str, filename: str, data: bytes) -> str:
        """
        문제/지문 이미지를 저장소에 올리고 공개 URL을 돌려준다.
        반환된 URL을 문제나 지문의 image_url에 넣어 쓴다.
        """
        await self.identity.require_admin(admin_token)
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in config.IMAGE_EXTENSIONS:
            raise ValidationFailed("Please upload an image file")
        if not data:
            raise ValidationFailed("Image file is empty")
        if len(data) > config.MAX_IMAGE_SIZE:
            raise ValidationFailed("Image file is too large (max 5MB).")

        url = await self.backend.upload_file(config.IMAGE_BUCKET, f"{new_id()}{ext}", data)
        logger.info(f"이미지 업로드: {filename} → {url}")
        return url

    # ── 문의함 ──────────────────────────────────────────────────────────────

    async def submit_contact_message(
        self, name: str, email: str, message: str, phone: Optional[str] = None
    ) -> ContactMessage:
        """공개 문의 접수 (로그인 불필요)."""
        try:
            record = ContactMessage(name=name, email=email, phone=phone or None, message=message)
        except ValidationError as e:
            raise ValidationFailed(_validation_message(e)) from e
        return await self.backend.insert_contact_message(record)

    async def list_contact_messages(self, admin_token: str) -> List[ContactMessage]:
        await self.identity.require_admin(admin_token)
        return await self.backend.list_contact_messages()

    async def mark_read(self, admin_token: str, message_id: str) -> ContactMessage:
        await self.identity.require_admin(admin_token)
        return await self.backend.mark_contact_message_read(message_id)
