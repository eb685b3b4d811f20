"""
services/bulk_import.py

CSV 학생 일괄 등록.
Public API:
  - parse_csv(text, default_class) -> List[ImportRow]
  - validate_row(row) -> Optional[str]
  - run_import(accounts, admin_token, rows) -> ImportReport
  - template_csv() / export_report_csv(outcomes) -> str

설계 원칙:
- 행마다 독립적으로 검증, 한 행의 실패가 다른 행을 중단하거나 되돌리지 않는다.
- 이름이 빈 행은 빈 줄로 보고 결과에 넣지 않는다.
- 계정 생성 협력자의 오류 메시지는 그대로 기록한다.
"""

import csv
import io
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

import config
from exampro.services.accounts import AccountService
from exampro.services.errors import ExamProError, InvalidCsv

logger = logging.getLogger(__name__)

INVALID_NAME = "Name must have 3 parts"
MISSING_CLASS = "Class is required"

TEMPLATE_HEADER = ["full_name", "phone", "class"]
TEMPLATE_ROWS = [
    ["Mohamed Ahmed Hassan", "+201234567890", "3prp"],
    ["Sara Ali Omar", "", "1sec"],
]
REPORT_HEADER = ["Name", "User ID", "Status", "Error"]


class ImportRow(BaseModel):
    full_name: str
    phone: str = ""
    class_name: str = ""


class ImportOutcome(BaseModel):
    name: str
    login_id: str = ""
    success: bool
    error: Optional[str] = None


class ImportReport(BaseModel):
    outcomes: List[ImportOutcome] = Field(default_factory=list)
    valid_count: int = Field(0, description="로컬 검증을 통과해 계정 생성까지 간 행 수")

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failure_count(self) -> int:
        return self.total - self.success_count


# ── 파싱 / 검증 ─────────────────────────────────────────────────────────────

def _clean(value: str) -> str:
    return value.strip().strip("\"'").strip()


def _find_column(headers: List[str], *needles: str) -> int:
    for idx, header in enumerate(headers):
        if any(needle in header for needle in needles):
            return idx
    return -1


def parse_csv(text: str, default_class: str = "") -> List[ImportRow]:
    """
    헤더 + 데이터 행을 ImportRow 리스트로 변환한다.

    헤더는 대소문자 무시 부분 일치로 찾는다:
      "name" → 이름, "phone" → 전화번호, "class"/"grade" → 학년/반.
    학년/반 열이 없거나 값이 비면 default_class를 쓴다.
    이름이 빈 행은 버린다.
    """
    lines = (text or "").strip().splitlines()
    if len(lines) < 2:
        return []

    try:
        records = list(csv.reader(lines))
    except csv.Error as e:
        raise InvalidCsv() from e

    headers = [_clean(h).lower() for h in records[0]]
    name_idx = _find_column(headers, "name")
    phone_idx = _find_column(headers, "phone")
    class_idx = _find_column(headers, "class", "grade")

    def cell(values: List[str], idx: int) -> str:
        return _clean(values[idx]) if 0 <= idx < len(values) else ""

    rows = []
    for values in records[1:]:
        full_name = cell(values, name_idx)
        if not full_name:
            continue
        rows.append(ImportRow(
            full_name=full_name,
            phone=cell(values, phone_idx),
            class_name=cell(values, class_idx) or default_class.strip(),
        ))
    return rows


def validate_full_name(name: str) -> bool:
    return len(name.split()) >= config.MIN_NAME_PARTS


def validate_row(row: ImportRow) -> Optional[str]:
    """통과하면 None, 실패하면 사유 문자열."""
    if not validate_full_name(row.full_name):
        return INVALID_NAME
    if not row.class_name:
        return MISSING_CLASS
    return None


# ── 실행 ──────────────────────────────────────────────────────────────────

async def run_import(
    accounts: AccountService,
    admin_token: str,
    rows: List[ImportRow],
) -> ImportReport:
    """
    검증을 통과한 행을 한 건씩 계정 생성 협력자에 넘긴다.

    Returns:
        입력 순서를 유지한 행별 결과. 성공/실패 수는 세어서 얻는다.
    """
    await accounts.identity.require_admin(admin_token)

    report = ImportReport()
    for row in rows:
        reason = validate_row(row)
        if reason:
            report.outcomes.append(ImportOutcome(name=row.full_name, success=False, error=reason))
            continue

        report.valid_count += 1
        try:
            created = await accounts.create_account(
                admin_token,
                full_name=row.full_name,
                phone=row.phone or None,
                class_name=row.class_name,
            )
        except ExamProError as e:
            logger.warning(f"일괄 등록 실패: {row.full_name} ({e.message})")
            report.outcomes.append(ImportOutcome(name=row.full_name, success=False, error=e.message))
            continue
        except Exception as e:
            logger.exception(f"일괄 등록 중 예외: {row.full_name}")
            report.outcomes.append(
                ImportOutcome(name=row.full_name, success=False, error=str(e) or "Unknown error")
            )
            continue

        report.outcomes.append(
            ImportOutcome(name=row.full_name, login_id=created.login_id, success=True)
        )

    logger.info(f"일괄 등록: {report.success_count} / {report.total}명 성공")
    return report


# ── CSV 출력 ───────────────────────────────────────────────────────────────

def template_csv() -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(TEMPLATE_HEADER)
    writer.writerows(TEMPLATE_ROWS)
    return buf.getvalue()


def export_report_csv(outcomes: List[ImportOutcome]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    buf.write(",".join(REPORT_HEADER) + "\n")
    for o in outcomes:
        writer.writerow([o.name, o.login_id, "Success" if o.success else "Failed", o.error or ""])
    return buf.getvalue()
