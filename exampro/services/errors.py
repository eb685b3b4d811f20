"""
services/errors.py

ExamPro 전체에서 사용하는 예외 계층.
모든 예외는 사용자에게 보여줄 메시지와 HTTP 상태 코드를 함께 가진다.
"""


class ExamProError(Exception):
    """모든 도메인 예외의 기반 클래스."""

    status_code = 400
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


# ── 검증 오류 (로컬에서 복구, 상태 변화 없음) ─────────────────────────────────

class ValidationFailed(ExamProError):
    status_code = 400
    message = "Invalid input"


class InvalidAnswer(ValidationFailed):
    message = "Selected option is not available for this question"


class InvalidCsv(ValidationFailed):
    message = "Failed to parse CSV file"


# ── 인증/권한 오류 (세션 종료) ───────────────────────────────────────────────

class NotAuthenticated(ExamProError):
    status_code = 401
    message = "Login required"


class InvalidLoginId(ExamProError):
    status_code = 401
    message = "Invalid User ID"


class InvalidCredentials(ExamProError):
    status_code = 401
    message = "Invalid credentials"


class DeviceConflict(ExamProError):
    status_code = 403
    message = (
        "This device is already registered to another account. "
        "Contact admin for assistance."
    )


class AdminRequired(ExamProError):
    status_code = 403
    message = "Admin access required"


# ── 없음 / 이미 완료 ─────────────────────────────────────────────────────────

class ExamNotFound(ExamProError):
    status_code = 404
    message = "Exam not found"


class AttemptNotFound(ExamProError):
    status_code = 404
    message = "Attempt not found"


class AccountNotFound(ExamProError):
    status_code = 404
    message = "Account not found"


class QuestionNotFound(ExamProError):
    status_code = 404
    message = "Question not found"


class ExamAlreadyCompleted(ExamProError):
    status_code = 409
    message = "You have already completed this exam. Contact admin for retake permission."


class SessionNotActive(ExamProError):
    status_code = 409
    message = "No active exam session"


# ── 백엔드/네트워크 오류 ─────────────────────────────────────────────────────

class BackendError(ExamProError):
    """백엔드 호출 실패. 재시도 가능."""

    status_code = 503
    message = "Backend request failed. Please try again."


class DuplicateRecord(BackendError):
    """유일성 제약 위반."""

    status_code = 409
    message = "Record already exists"


class LoginIdExhausted(BackendError):
    message = "Could not allocate a unique login ID"


class SubmissionFailed(BackendError):
    """제출 실패. 응시 기록은 미완료 상태로 남아 있어 다시 제출할 수 있다."""

    message = "Failed to submit exam. Please try again."


class SubmissionInconsistent(ExamProError):
    """답안은 저장됐지만 응시 기록 갱신에 실패한 치명적 불일치."""

    status_code = 500
    message = (
        "Your answers were saved but the exam could not be finalized. "
        "Please contact support."
    )
