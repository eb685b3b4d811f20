import os

# 기본 디렉토리 설정
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# 경로 설정
STATIC_DIR = os.path.join(BASE_DIR, "static")
LOG_FILE = os.path.join(BASE_DIR, "exampro.log")

# 서버 설정
DEFAULT_HOST = os.getenv("HOST", "0.0.0.0")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))

# 백엔드 선택: "sql" (SQLAlchemy, 기본) | "memory" (프로세스 메모리, 재시작 시 초기화)
BACKEND = os.getenv("BACKEND", "sql")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///" + os.path.join(BASE_DIR, "exampro.db"))

# 업로드 파일 공개 URL 기준 주소
BACKEND_URL = os.getenv("BACKEND_URL", "http://127.0.0.1:8000")
INTERNAL_EMAIL_DOMAIN = os.getenv("INTERNAL_EMAIL_DOMAIN", "exampro.local")

# 로그인 ID 설정 (0, O, 1, I 제외)
LOGIN_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LOGIN_ID_LENGTH = 8
LOGIN_ID_MAX_ATTEMPTS = 10

# 시험 설정
DEFAULT_PASSING_SCORE = int(os.getenv("DEFAULT_PASSING_SCORE", "70"))
TICK_INTERVAL_SECONDS = float(os.getenv("TICK_INTERVAL_SECONDS", "1.0"))

# 미완료 응시 기록 정책: "retain" (보존) | "purge" (재응시 시 오래된 기록 삭제)
ABANDONED_ATTEMPT_POLICY = os.getenv("ABANDONED_ATTEMPT_POLICY", "retain")
ABANDONED_ATTEMPT_MAX_AGE_MINUTES = int(os.getenv("ABANDONED_ATTEMPT_MAX_AGE_MINUTES", "1440"))

# 세션 설정
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))
SESSION_CLEANUP_INTERVAL = int(os.getenv("SESSION_CLEANUP_INTERVAL", "300"))

# CSV 일괄 등록 설정
MIN_NAME_PARTS = 3
MAX_CSV_SIZE = 2 * 1024 * 1024  # 2 MB

# 초기 관리자 계정 (앱 시작 시 없으면 생성)
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@exampro.local")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

# 문제/지문 이미지 업로드 설정
IMAGE_BUCKET = os.getenv("IMAGE_BUCKET", "exam-images")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5 MB
