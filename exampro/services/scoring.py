"""
services/scoring.py

시험 채점 비즈니스 로직.
순수 Python 함수로 구성 — UI 코드, 전역 상태 변경, 백엔드 호출 없음.
제출 시점과 결과 화면에서 동일한 함수를 사용해 합격 여부가 어긋나지 않게 한다.
"""

from typing import Dict, List, Mapping, NamedTuple, Optional

from exampro.models.attempt import Answer
from exampro.models.exam import Question


class ScoreResult(NamedTuple):
    correct_count: int
    total: int
    percentage: float
    raw_score: int


def is_correct(question: Question, user_answers: Mapping[str, str]) -> bool:
    """
    정답 판정 기준: user_answers.get(question.id) == question.correct_answer
    응답하지 않은 문제(키 없음)는 오답으로 처리.
    """
    selected = user_answers.get(question.id)
    return selected is not None and selected == question.correct_answer


def score(
    questions: List[Question],
    user_answers: Mapping[str, str],
) -> ScoreResult:
    """
    사용자 답안을 채점한다.

    Args:
        questions:    채점 대상 Question 리스트 (응시 시작 시점 스냅샷).
        user_answers: 사용자 답안지. {question.id: 선택한 보기 문자}

    Returns:
        ScoreResult(correct_count, total, percentage, raw_score)
        - total은 항상 len(questions). 미응답 문제도 분모에 포함.
        - percentage는 0.0 ~ 100.0. questions가 비어 있으면 0.0.
        - raw_score는 정답 문제의 배점(points) 합계.
    """
    total = len(questions)
    correct = [q for q in questions if is_correct(q, user_answers)]
    correct_count = len(correct)
    percentage = correct_count / total * 100 if total else 0.0
    raw_score = sum(q.points for q in correct)
    return ScoreResult(correct_count, total, percentage, raw_score)


def grade_answers(
    attempt_id: str,
    questions: List[Question],
    user_answers: Mapping[str, str],
) -> List[Answer]:
    """문제마다 1개의 Answer 행을 만든다 (미응답은 selected_answer=None, 오답)."""
    return [
        Answer(
            attempt_id=attempt_id,
            question_id=q.id,
            selected_answer=user_answers.get(q.id),
            is_correct=is_correct(q, user_answers),
        )
        for q in questions
    ]


def get_incorrect_questions(
    questions: List[Question],
    user_answers: Dict[str, str],
) -> List[Question]:
    """오답 문제 리스트 (미응답 포함). 원본 순서 유지."""
    return [q for q in questions if not is_correct(q, user_answers)]


def is_passed(percentage: Optional[float], passing_score: float) -> bool:
    """
    합격 여부를 반환한다. 저장하지 않고 항상 다시 계산한다.

    Args:
        percentage:    score()가 반환한 백분율 (None이면 0으로 취급).
        passing_score: 시험의 합격 기준 (%).
    """
    return (percentage or 0.0) >= passing_score
