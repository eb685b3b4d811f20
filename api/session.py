"""
api/session.py — 멀티유저 인메모리 시험 세션 저장소

인증 토큰마다 진행 중인 ExamSession 하나를 보관한다.
TTL(기본 1시간) 동안 접근이 없으면 만료되며, 만료 시 타이머를 정리한다.
응시 기록 자체는 백엔드에 남으므로 여기서 지워도 데이터는 사라지지 않는다.
"""

import threading
import time
from typing import Dict, Optional

import config
from exampro.services.exam_session import ExamSession

SESSION_COOKIE = "exampro_session"


class SessionRegistry:

    def __init__(self, ttl: int = config.SESSION_TTL):
        self.ttl = ttl
        self._lock = threading.Lock()
        self._sessions: Dict[str, ExamSession] = {}
        self._timestamps: Dict[str, float] = {}

    def put(self, token: str, exam_session: ExamSession) -> None:
        """토큰에 새 시험 세션을 연결. 이전 세션이 있으면 정리."""
        with self._lock:
            previous = self._sessions.get(token)
            self._sessions[token] = exam_session
            self._timestamps[token] = time.time()
        if previous is not None and previous is not exam_session:
            previous.close()

    def get(self, token: str) -> Optional[ExamSession]:
        """토큰으로 시험 세션을 가져옴. 만료되었거나 없으면 None."""
        expired = None
        with self._lock:
            if token not in self._sessions:
                return None
            if time.time() - self._timestamps[token] > self.ttl:
                expired = self._sessions.pop(token)
                del self._timestamps[token]
            else:
                self._timestamps[token] = time.time()  # 접근 시 갱신
                return self._sessions[token]
        expired.close()
        return None

    def discard(self, token: str) -> None:
        with self._lock:
            exam_session = self._sessions.pop(token, None)
            self._timestamps.pop(token, None)
        if exam_session is not None:
            exam_session.close()

    def cleanup_expired(self) -> int:
        """만료된 세션을 정리. 제거된 수 반환."""
        now = time.time()
        with self._lock:
            expired = [t for t, ts in self._timestamps.items() if now - ts > self.ttl]
            removed = [self._sessions.pop(t) for t in expired]
            for t in expired:
                del self._timestamps[t]
        for exam_session in removed:
            exam_session.close()
        return len(removed)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._timestamps.clear()
        for exam_session in sessions:
            exam_session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
