"""
models/tables.py

SqlBackend가 쓰는 SQLAlchemy 테이블 정의.
도메인 모델(pydantic)과 필드 이름을 맞춰 두어 행 <-> 모델 변환이 단순하다.
"""

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, LargeBinary,
    String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


# ── 인증 ────────────────────────────────────────────────────────────────────

class AuthUser(Base):
    __tablename__ = "auth_users"
    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(200), nullable=False)


class AuthSessionRow(Base):
    __tablename__ = "auth_sessions"
    token = Column(String(64), primary_key=True)
    account_id = Column(String(36), index=True, nullable=False)
    email = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


# ── 계정 ────────────────────────────────────────────────────────────────────

class AccountRow(Base):
    __tablename__ = "profiles"
    id = Column(String(36), primary_key=True)
    login_id = Column(String(16), unique=True, index=True, nullable=False)
    full_name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    class_name = Column("class", String(50), nullable=True)
    role = Column(String(20), default="student", nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DeviceRegistrationRow(Base):
    __tablename__ = "device_registrations"
    device_fingerprint = Column(String(64), primary_key=True)
    account_id = Column(String(36), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class LoginRecordRow(Base):
    __tablename__ = "login_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(36), index=True, nullable=False)
    device_fingerprint = Column(String(64), nullable=True)
    login_at = Column(DateTime(timezone=True), nullable=False)


# ── 시험 / 지문 / 문제 ───────────────────────────────────────────────────────

class ExamRow(Base):
    __tablename__ = "exams"
    id = Column(String(36), primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    passing_score = Column(Integer, nullable=False, default=70)
    grade = Column(String(50), nullable=True)
    subject = Column(String(50), nullable=True)
    is_published = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class PassageRow(Base):
    __tablename__ = "passages"
    id = Column(String(36), primary_key=True)
    exam_id = Column(String(36), ForeignKey("exams.id"), index=True, nullable=False)
    title = Column(String(200), nullable=True)
    content = Column(Text, nullable=False)
    image_url = Column(String(500), nullable=True)
    order_index = Column(Integer, nullable=False, default=0)


class QuestionRow(Base):
    __tablename__ = "questions"
    id = Column(String(36), primary_key=True)
    exam_id = Column(String(36), ForeignKey("exams.id"), index=True, nullable=False)
    passage_id = Column(String(36), nullable=True)
    question_text = Column(Text, nullable=False)
    image_url = Column(String(500), nullable=True)
    option_a = Column(Text, nullable=True)
    option_b = Column(Text, nullable=True)
    option_c = Column(Text, nullable=True)
    option_d = Column(Text, nullable=True)
    correct_answer = Column(String(1), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    points = Column(Integer, nullable=False, default=1)


# ── 응시 기록 / 답안 ─────────────────────────────────────────────────────────

class AttemptRow(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (
        # (계정, 시험)당 완료 기록은 1개
        Index(
            "uq_exam_attempts_completed", "account_id", "exam_id", unique=True,
            sqlite_where=text("completed_at IS NOT NULL"),
            postgresql_where=text("completed_at IS NOT NULL"),
        ),
    )
    id = Column(String(36), primary_key=True)
    account_id = Column(String(36), index=True, nullable=False)
    exam_id = Column(String(36), ForeignKey("exams.id"), index=True, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    total_questions = Column(Integer, nullable=False)
    correct_answers = Column(Integer, nullable=True)
    score = Column(Integer, nullable=True)
    percentage = Column(Float, nullable=True)
    time_taken_seconds = Column(Integer, nullable=True)


class AnswerRow(Base):
    __tablename__ = "answers"
    __table_args__ = (UniqueConstraint("attempt_id", "question_id"),)
    id = Column(String(36), primary_key=True)
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), index=True, nullable=False)
    question_id = Column(String(36), nullable=False)
    selected_answer = Column(String(1), nullable=True)
    is_correct = Column(Boolean, nullable=True)


# ── 문의 / 파일 ─────────────────────────────────────────────────────────────

class ContactMessageRow(Base):
    __tablename__ = "contact_messages"
    id = Column(String(36), primary_key=True)
    name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class StoredFile(Base):
    __tablename__ = "stored_files"
    key = Column(String(500), primary_key=True)
    data = Column(LargeBinary, nullable=False)
