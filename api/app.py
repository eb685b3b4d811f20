"""
api/app.py — FastAPI 앱 인스턴스 + 세션 미들웨어 + 예외 처리 + static 파일 서빙
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

import config
from api.routes import router
from api.session import SESSION_COOKIE, SessionRegistry
from exampro.services.backend import Backend
from exampro.services.errors import ExamProError
from exampro.services.memory_backend import InMemoryBackend
from exampro.services.sql_backend import SqlBackend

logger = logging.getLogger(__name__)


def _default_backend() -> Backend:
    public_url = f"{config.BACKEND_URL}/storage"
    if config.BACKEND == "memory":
        logger.warning("인메모리 백엔드 사용: 재시작하면 모든 데이터가 사라짐")
        return InMemoryBackend(public_url=public_url)
    return SqlBackend(config.DATABASE_URL, public_url=public_url)


async def _cleanup_loop(registry: SessionRegistry) -> None:
    # 만료 세션 주기적 정리
    while True:
        await asyncio.sleep(config.SESSION_CLEANUP_INTERVAL)
        removed = registry.cleanup_expired()
        if removed:
            logger.info(f"만료 세션 {removed}개 정리")


def create_app(backend: Optional[Backend] = None, registry: Optional[SessionRegistry] = None) -> FastAPI:
    backend = backend or _default_backend()
    registry = registry or SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.ADMIN_PASSWORD:
            await backend.bootstrap_admin(config.ADMIN_EMAIL, config.ADMIN_PASSWORD, config.ADMIN_NAME)
        cleanup = asyncio.create_task(_cleanup_loop(registry))
        try:
            yield
        finally:
            cleanup.cancel()
            registry.close_all()

    app = FastAPI(title="ExamPro", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.backend = backend
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 세션 미들웨어: 쿠키 또는 Bearer 헤더에서 인증 토큰을 읽는다
    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        token = request.cookies.get(SESSION_COOKIE)
        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:].strip()
        request.state.token = token or None
        response: Response = await call_next(request)
        return response

    @app.exception_handler(ExamProError)
    async def handle_exampro_error(request: Request, exc: ExamProError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    app.include_router(router)

    # static 파일 마운트
    if os.path.isdir(config.STATIC_DIR):
        app.mount("/static", StaticFiles(directory=config.STATIC_DIR), name="static")

    # 루트 → index.html
    @app.get("/")
    async def serve_index():
        index_path = os.path.join(config.STATIC_DIR, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"error": "index.html not found"}

    return app
