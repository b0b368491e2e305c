from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.errors import ApiError
from app.routes._deps import error_response, request_id_from_request, trace_id_from_request
from app.routes.upload_queue import router as upload_queue_router
from app.security import JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive
from app.upload_queue import get_upload_queue_service

logger = logging.getLogger(__name__)

SESSION_PROTECTED_PREFIX = "/api/upload-queue"
# Authenticated by the shared processor key instead of a user session.
API_KEY_PATHS = frozenset({"/api/upload-queue/process"})


def _requires_session(path: str) -> bool:
    if path in API_KEY_PATHS:
        return False
    return path == SESSION_PROTECTED_PREFIX or path.startswith(SESSION_PROTECTED_PREFIX + "/")


def create_app() -> FastAPI:
    app = FastAPI(title="Resume Upload Queue API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _append_security_audit_log(*, request: Request, code: str, detail: str) -> None:
        try:
            service = get_upload_queue_service()
        except Exception as exc:
            logger.warning("security_audit_unavailable error=%s", exc)
            return
        service.audit.record(
            "security blocked",
            level="warning",
            source="security",
            details={
                "code": code,
                "detail": detail,
                "path": request.url.path,
                "trace_id": trace_id_from_request(request),
                "headers": redact_sensitive(dict(request.headers.items())),
            },
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        try:
            if request.method != "OPTIONS" and _requires_session(request.url.path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
        except ApiError as exc:
            _append_security_audit_log(request=request, code=exc.code, detail=exc.message)
            return error_response(request, code=exc.code, message=exc.message, status_code=exc.http_status)
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code == "AUTH_UNAUTHORIZED":
            _append_security_audit_log(request=request, code=exc.code, detail=exc.message)
        return error_response(request, code=exc.code, message=exc.message, status_code=exc.http_status)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(request, code="REQ_VALIDATION_FAILED", message="invalid payload", status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(request, code="REQ_NOT_FOUND", message="resource not found", status_code=404)
        return error_response(request, code="REQ_HTTP_ERROR", message=str(exc.detail), status_code=exc.status_code)

    @app.get("/healthz")
    def healthz() -> dict[str, object]:
        service = get_upload_queue_service()
        return {"status": "ok", "settings": service.settings.snapshot()}

    app.include_router(upload_queue_router)
    return app


app = create_app()
