"""
services/exam_session.py

시험 응시 세션 상태 머신.

    LOADING ──> ACTIVE ──> SUBMITTING ──> COMPLETED
       │          │            ▲
       │          └─> EXPIRED ─┘
       └─> BLOCKED (이미 완료한 시험, 재응시 허가 없음)

    SUBMITTING에서도 다른 세션이 먼저 완료했으면 BLOCKED로 끝난다.

- 답안은 제출 전까지 세션 객체 안에만 있고, 이동/선택은 백엔드를 호출하지 않는다.
- 타이머는 취소 가능한 asyncio 태스크. tick() 한 번이 논리적 1초.
- 시간 만료와 수동 제출 중 먼저 도착한 쪽만 채점+저장을 수행한다.
  래치(self._submission)는 await 이전에 동기적으로 설정되므로
  이벤트 루프 위에서 두 트리거가 겹쳐도 제출은 정확히 한 번이다.
- 화면을 떠나도(close) 응시 기록은 미완료 상태로 남는다.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel

import config
from exampro.models.account import Account, utcnow
from exampro.models.attempt import Attempt
from exampro.models.exam import Exam, Passage, Question
from exampro.models.session_state import ExamState, SessionState
from exampro.services.backend import Backend
from exampro.services.errors import (
    DuplicateRecord, ExamAlreadyCompleted, ExamNotFound, InvalidAnswer,
    SessionNotActive, SubmissionFailed, SubmissionInconsistent,
)
from exampro.services.scoring import grade_answers, is_passed, score

logger = logging.getLogger(__name__)

TRIGGER_MANUAL = "manual"
TRIGGER_TIMEOUT = "timeout"


class SubmissionResult(BaseModel):
    attempt: Attempt
    correct_count: int
    total: int
    percentage: float
    passed: bool
    trigger: str


async def purge_abandoned_attempts(
    backend: Backend,
    older_than: datetime,
    account_id: Optional[str] = None,
    exam_id: Optional[str] = None,
) -> int:
    """older_than 이전에 시작했지만 끝내 완료되지 않은 응시 기록을 삭제. 삭제 수 반환."""
    stale = [
        a for a in await backend.list_attempts(account_id=account_id, exam_id=exam_id, completed=False)
        if a.started_at < older_than
    ]
    for attempt in stale:
        await backend.delete_attempt(attempt.id)
    if stale:
        logger.info(f"미완료 응시 기록 {len(stale)}개 정리")
    return len(stale)


class ExamSession:

    def __init__(
        self,
        backend: Backend,
        account: Account,
        exam_id: str,
        tick_interval: float = config.TICK_INTERVAL_SECONDS,
        run_clock: bool = True,
        abandoned_policy: str = config.ABANDONED_ATTEMPT_POLICY,
        abandoned_max_age: timedelta = timedelta(minutes=config.ABANDONED_ATTEMPT_MAX_AGE_MINUTES),
    ):
        self.backend = backend
        self.account = account
        self.exam_id = exam_id
        self.tick_interval = tick_interval
        self.run_clock = run_clock
        self.abandoned_policy = abandoned_policy
        self.abandoned_max_age = abandoned_max_age

        self.state = SessionState.LOADING
        self.exam: Optional[Exam] = None
        self.questions: List[Question] = []
        self.passages: List[Passage] = []
        self.attempt: Optional[Attempt] = None
        self.result: Optional[SubmissionResult] = None
        self.current_index = 0
        self.remaining_seconds = 0
        self.closed = False

        self._answers: Dict[str, str] = {}
        self._clock_task: Optional[asyncio.Task] = None
        self._submission: Optional[asyncio.Task] = None
        self._remaining_at_submit = 0

    # ── 진입 (LOADING) ──────────────────────────────────────────────────────

    async def start(self) -> "ExamSession":
        if self.state != SessionState.LOADING:
            raise SessionNotActive("Session already started")

        completed = await self.backend.list_attempts(
            account_id=self.account.id, exam_id=self.exam_id, completed=True
        )
        if completed:
            self.state = SessionState.BLOCKED
            logger.info(f"재응시 차단: {self.account.login_id} / 시험 {self.exam_id}")
            raise ExamAlreadyCompleted()

        exam = await self.backend.get_exam(self.exam_id)
        if exam is None or not exam.is_published:
            self.state = SessionState.FAILED
            raise ExamNotFound()

        self.questions = await self.backend.list_questions(self.exam_id)
        self.passages = await self.backend.list_passages(self.exam_id)

        if self.abandoned_policy == "purge":
            await purge_abandoned_attempts(
                self.backend,
                utcnow() - self.abandoned_max_age,
                account_id=self.account.id,
                exam_id=self.exam_id,
            )

        self.attempt = await self.backend.insert_attempt(
            Attempt(
                account_id=self.account.id,
                exam_id=self.exam_id,
                total_questions=len(self.questions),
            )
        )
        self.exam = exam
        self.remaining_seconds = exam.duration_minutes * 60
        self.state = SessionState.ACTIVE
        logger.info(
            f"시험 시작: {self.account.login_id} / {exam.title} "
            f"(응시 {self.attempt.id}, {len(self.questions)}문항)"
        )

        if self.closed:
            # 로딩 중에 화면을 떠남 → 타이머를 띄우지 않는다
            return self
        self._start_clock()
        return self

    # ── 응시 중 (ACTIVE) ────────────────────────────────────────────────────

    def _require_active(self) -> None:
        if self.closed or self.state != SessionState.ACTIVE:
            raise SessionNotActive()

    @property
    def current_question(self) -> Optional[Question]:
        if not self.questions:
            return None
        return self.questions[self.current_index]

    @property
    def answers(self) -> Dict[str, str]:
        return dict(self._answers)

    def passage_for(self, question: Question) -> Optional[Passage]:
        if not question.passage_id:
            return None
        return next((p for p in self.passages if p.id == question.passage_id), None)

    def navigate(self, index: int) -> int:
        """임의의 문제로 이동 (범위 밖이면 보정). 저장하지 않는다."""
        self._require_active()
        if not self.questions:
            return 0
        self.current_index = max(0, min(index, len(self.questions) - 1))
        return self.current_index

    def select_answer(self, letter: Optional[str]) -> None:
        """현재 문제의 답을 선택/변경. 빈 값이면 선택 해제."""
        self._require_active()
        question = self.current_question
        if question is None:
            raise InvalidAnswer("This exam has no questions")

        letter = (letter or "").strip().upper()
        if not letter:
            self._answers.pop(question.id, None)
            return
        if letter not in question.available_letters():
            raise InvalidAnswer()
        self._answers[question.id] = letter

    def clear_answer(self) -> None:
        self.select_answer(None)

    def snapshot(self) -> ExamState:
        return ExamState(
            state=self.state,
            current_quest_index=self.current_index,
            user_answers=dict(self._answers),
            remaining_seconds=self.remaining_seconds,
            attempt_id=self.attempt.id if self.attempt else None,
            total=len(self.questions),
        )

    # ── 타이머 ─────────────────────────────────────────────────────────────

    def _start_clock(self) -> None:
        if self.run_clock and self._clock_task is None:
            self._clock_task = asyncio.get_running_loop().create_task(self._run_clock())

    def _stop_clock(self) -> None:
        task, self._clock_task = self._clock_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_clock(self) -> None:
        while self.state == SessionState.ACTIVE and self.remaining_seconds > 0:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def tick(self) -> int:
        """논리적 1초 경과. 0에 도달하면 EXPIRED로 전이하고 자동 제출한다."""
        if self.closed or self.state != SessionState.ACTIVE:
            return self.remaining_seconds
        self.remaining_seconds = max(0, self.remaining_seconds - 1)
        if self.remaining_seconds == 0:
            self.state = SessionState.EXPIRED
            logger.info(f"시간 만료, 자동 제출: 응시 {self.attempt.id}")
            self._begin_submission(TRIGGER_TIMEOUT)
        return self.remaining_seconds

    # ── 제출 (SUBMITTING) ──────────────────────────────────────────────────

    def _begin_submission(self, trigger: str) -> asyncio.Task:
        """
        래치: 처음 호출만 채점+저장 태스크를 만든다. 이후 호출은 같은 태스크를 받는다.
        await 없이 동기적으로 실행되어야 한다.
        """
        if self._submission is not None:
            return self._submission
        if self.closed or self.state not in (SessionState.ACTIVE, SessionState.EXPIRED):
            raise SessionNotActive()

        self._stop_clock()
        self._remaining_at_submit = self.remaining_seconds
        self.state = SessionState.SUBMITTING
        self._submission = asyncio.get_running_loop().create_task(self._persist(trigger))
        self._submission.add_done_callback(self._on_submission_done)
        return self._submission

    async def submit(self) -> SubmissionResult:
        """수동 제출. 이미 제출 중이면 그 결과를 기다린다."""
        if self.state == SessionState.COMPLETED and self.result is not None:
            return self.result
        task = self._begin_submission(TRIGGER_MANUAL)
        return await asyncio.shield(task)

    async def wait_for_completion(self) -> SubmissionResult:
        if self.result is not None:
            return self.result
        if self._submission is None:
            raise SessionNotActive("Exam has not been submitted")
        return await asyncio.shield(self._submission)

    async def _persist(self, trigger: str) -> SubmissionResult:
        answers = dict(self._answers)
        result = score(self.questions, answers)
        rows = grade_answers(self.attempt.id, self.questions, answers)
        elapsed = self.exam.duration_minutes * 60 - self._remaining_at_submit

        # 같은 계정이 다른 세션(다른 토큰/기기)에서 이미 완료했으면 아무것도 쓰지 않는다
        try:
            completed = await self.backend.list_attempts(
                account_id=self.account.id, exam_id=self.exam_id, completed=True
            )
        except Exception as e:
            logger.warning(f"완료 여부 확인 실패, 재시도 가능: 응시 {self.attempt.id} ({e})")
            self._reopen()
            raise SubmissionFailed() from e
        if any(a.id != self.attempt.id for a in completed):
            self._block()
            raise ExamAlreadyCompleted()

        try:
            await self.backend.insert_answers(rows)
        except Exception as e:
            logger.warning(f"답안 저장 실패, 재시도 가능: 응시 {self.attempt.id} ({e})")
            self._reopen()
            raise SubmissionFailed() from e

        try:
            attempt = await self.backend.update_attempt(
                self.attempt.id,
                completed_at=utcnow(),
                correct_answers=result.correct_count,
                score=result.raw_score,
                percentage=result.percentage,
                time_taken_seconds=elapsed,
            )
        except Exception as e:
            # DuplicateRecord: 동시에 제출한 다른 세션이 먼저 완료함
            lost_race = isinstance(e, DuplicateRecord)
            logger.error(f"응시 기록 갱신 실패, 답안 되돌림 시도: 응시 {self.attempt.id} ({e})")
            try:
                await self.backend.delete_answers(self.attempt.id)
            except Exception:
                logger.exception(f"답안 되돌림 실패: 응시 {self.attempt.id}에 고아 답안이 남음")
                self.state = SessionState.FAILED
                raise SubmissionInconsistent() from e
            if lost_race:
                self._block()
                raise ExamAlreadyCompleted() from e
            self._reopen()
            raise SubmissionFailed() from e

        self.attempt = attempt
        self.state = SessionState.COMPLETED
        self.result = SubmissionResult(
            attempt=attempt,
            correct_count=result.correct_count,
            total=result.total,
            percentage=result.percentage,
            passed=is_passed(result.percentage, self.exam.passing_score),
            trigger=trigger,
        )
        logger.info(
            f"제출 완료 ({trigger}): 응시 {attempt.id} "
            f"{result.correct_count}/{result.total} ({result.percentage:.1f}%)"
        )
        return self.result

    def _reopen(self) -> None:
        """재시도 가능한 실패 후 래치 해제. 시간이 남았으면 타이머 재개."""
        self._submission = None
        if self.remaining_seconds > 0:
            self.state = SessionState.ACTIVE
            if not self.closed:
                self._start_clock()
        else:
            self.state = SessionState.EXPIRED

    def _block(self) -> None:
        """다른 세션이 먼저 완료함. 이 세션의 응시 기록은 미완료로 남는다."""
        self.state = SessionState.BLOCKED
        logger.info(f"중복 제출 차단: {self.account.login_id} / 시험 {self.exam_id} (응시 {self.attempt.id})")

    def _on_submission_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"제출 태스크 실패: {type(exc).__name__}: {exc}")

    # ── 정리 ──────────────────────────────────────────────────────────────

    def close(self) -> None:
        """화면 이탈/세션 만료. 여러 번 호출해도 안전하다. 응시 기록은 그대로 둔다."""
        if self.closed:
            return
        self.closed = True
        self._stop_clock()
        if self.state in (SessionState.ACTIVE, SessionState.EXPIRED):
            logger.info(f"응시 중단 (미완료로 남음): 응시 {self.attempt.id}")
