from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UploadQueueCreateRequest(BaseModel):
    file_name: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    file_path: str | None = None
    source: str | None = None
    upload_id: str | None = None
    position_id: str | None = None
    position_title: str | None = None
    position_description: str | None = None
    position_level: str | None = None


class BlockingProcessRequest(UploadQueueCreateRequest):
    # Accepted for compatibility with the upload form; the row is always inserted inprogress.
    status: str | None = None
    webhook_payload: dict[str, Any] | None = None


class UploadQueueUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file_name: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    file_path: str | None = None
    status: str | None = None
    source: str | None = None
    upload_id: str | None = None
    position_id: str | None = None
    position_title: str | None = None
    position_description: str | None = None
    position_level: str | None = None


def job_envelope(job: Any) -> dict[str, Any]:
    return job.as_dict()


def page_envelope(items: list[Any], total: int) -> dict[str, Any]:
    return {"data": [job_envelope(x) for x in items], "total": total}


def error_envelope(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"error": message, "code": code}
    if details is not None:
        error["details"] = details
    return error
