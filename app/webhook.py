from __future__ import annotations

import json
import mimetypes
import socket
from dataclasses import dataclass
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse

from app.errors import WebhookTransportError
from app.jobs import UploadJob

WEBHOOK_USER_TAG = "cv_screening"
RESPONSE_MODE = "blocking"
MAX_RESPONSE_MESSAGE_CHARS = 2000
# inputs keys build_payload derives from the job itself.
GENERATED_INPUT_KEYS = frozenset({"file_url", "fileName", "mimeType", "jobId", "filePath", "applied_job"})


def is_valid_webhook_url(url: str | None) -> bool:
    if not url:
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def guess_mime_type(file_name: str | None) -> str | None:
    if not file_name:
        return None
    if file_name.lower().endswith(".pdf"):
        return "application/pdf"
    mime, _ = mimetypes.guess_type(file_name)
    return mime


def caller_inputs(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Caller supplied inputs carried by a stored webhook_payload, without the generated keys."""
    if not isinstance(payload, dict):
        return {}
    inputs = payload.get("inputs")
    if not isinstance(inputs, dict):
        inputs = {k: v for k, v in payload.items() if k not in {"response_mode", "user"}}
    return {k: v for k, v in inputs.items() if k not in GENERATED_INPUT_KEYS}


def build_payload(
    job: UploadJob,
    *,
    file_url: str,
    extra_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Normalized JSON body for the resume processing webhook.

    Caller supplied inputs (candidate hints from the blocking upload form) are
    merged first so the job's own identifiers always win.
    """
    inputs: dict[str, Any] = dict(extra_inputs or {})
    inputs.update(
        {
            "file_url": file_url,
            "fileName": job.file_name,
            "mimeType": guess_mime_type(job.file_name),
            "jobId": job.id,
            "filePath": job.file_path,
        }
    )
    applied_job = job.applied_job()
    if applied_job is not None:
        inputs["applied_job"] = applied_job
    return {
        "inputs": inputs,
        "response_mode": RESPONSE_MODE,
        "user": WEBHOOK_USER_TAG,
    }


@dataclass
class DispatchResult:
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def as_response_record(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "message": self.body[:MAX_RESPONSE_MESSAGE_CHARS],
        }


class WebhookDispatcher:
    """Single-shot JSON POST to the processing webhook. No retries."""

    def __init__(self, *, timeout_s: float = 120.0) -> None:
        self._timeout_s = timeout_s

    def post(self, url: str, payload: dict[str, Any]) -> DispatchResult:
        body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
        req = request.Request(
            url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
                return DispatchResult(status_code=int(resp.status), body=raw)
        except HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            return DispatchResult(status_code=int(exc.code), body=raw)
        except (URLError, socket.timeout, OSError) as exc:
            reason = getattr(exc, "reason", None) or exc
            raise WebhookTransportError(url, f"Webhook request failed: {reason}") from exc
