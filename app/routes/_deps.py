from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from app.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def actor_id_from_request(request: Request) -> str | None:
    subject = getattr(request.state, "auth_subject", None)
    if not subject or subject == "anonymous":
        return None
    return str(subject)


def error_response(request: Request, *, code: str, message: str, status_code: int) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=error_envelope(code=code, message=message))
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response
