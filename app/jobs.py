from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.errors import ApiError

STATUS_QUEUED = "queued"
STATUS_INPROGRESS = "inprogress"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"

JOB_STATUSES = frozenset({STATUS_QUEUED, STATUS_INPROGRESS, STATUS_SUCCESS, STATUS_ERROR, STATUS_CANCELLED})
TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_ERROR, STATUS_CANCELLED})

# Transitions an operator may request through the management API. The
# queued -> inprogress claim belongs to the claimer and is not listed here.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_QUEUED: {STATUS_CANCELLED},
    STATUS_INPROGRESS: {STATUS_CANCELLED},
    STATUS_SUCCESS: set(),
    STATUS_ERROR: {STATUS_QUEUED},
    STATUS_CANCELLED: {STATUS_QUEUED},
}

INVALID_FILE_PATH_ERROR = "Invalid file_path (null or empty) in job"
WEBHOOK_SKIPPED_REASON = "skipped: webhook not configured"

JOB_COLUMNS = (
    "id",
    "file_name",
    "file_size",
    "file_path",
    "status",
    "source",
    "upload_id",
    "created_by",
    "position_id",
    "position_title",
    "position_description",
    "position_level",
    "webhook_payload",
    "webhook_response",
    "error",
    "error_details",
    "upload_date",
    "completed_date",
    "updated_at",
)
JSON_COLUMNS = frozenset({"webhook_payload", "webhook_response"})
# Columns a repository update may write. id and upload_date are immutable.
EDITABLE_COLUMNS = frozenset(JOB_COLUMNS) - {"id", "upload_date", "updated_at"}
# Subset open to the management API; error columns belong to the processor.
OPERATOR_COLUMNS = frozenset(
    {
        "file_name",
        "file_size",
        "file_path",
        "status",
        "source",
        "upload_id",
        "position_id",
        "position_title",
        "position_description",
        "position_level",
    }
)
NON_NULL_COLUMNS = frozenset({"file_name", "status"})


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class UploadJob:
    """One row of the upload_queue table."""

    file_name: str
    file_path: str | None
    id: str = field(default_factory=new_job_id)
    file_size: int | None = None
    status: str = STATUS_QUEUED
    source: str | None = None
    upload_id: str | None = None
    created_by: str | None = None
    position_id: str | None = None
    position_title: str | None = None
    position_description: str | None = None
    position_level: str | None = None
    webhook_payload: dict[str, Any] | None = None
    webhook_response: dict[str, Any] | None = None
    error: str | None = None
    error_details: str | None = None
    upload_date: str = field(default_factory=utcnow_iso)
    completed_date: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    def applied_job(self) -> dict[str, Any] | None:
        if not any((self.position_id, self.position_title, self.position_description, self.position_level)):
            return None
        return {
            "id": self.position_id,
            "title": self.position_title,
            "description": self.position_description,
            "level": self.position_level,
        }

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "UploadJob":
        known = {k: data[k] for k in JOB_COLUMNS if k in data}
        if known.get("file_size") is not None:
            known["file_size"] = int(known["file_size"])
        for key in ("upload_date", "completed_date", "updated_at"):
            value = known.get(key)
            if isinstance(value, datetime):
                known[key] = value.isoformat()
        known.setdefault("file_name", "")
        known.setdefault("file_path", None)
        return cls(**known)


def validate_transition(current_status: str, new_status: str) -> None:
    if new_status not in JOB_STATUSES:
        raise ApiError(
            code="UPLOAD_QUEUE_STATUS_INVALID",
            message=f"unknown status: {new_status}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    if new_status == current_status:
        return
    allowed = ALLOWED_TRANSITIONS.get(current_status, set())
    if new_status not in allowed:
        raise ApiError(
            code="UPLOAD_QUEUE_TRANSITION_INVALID",
            message=f"invalid transition: {current_status} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


def transition_side_effects(new_status: str, *, now: str) -> dict[str, Any]:
    """Extra column writes that keep completed_date consistent with status."""
    if new_status == STATUS_QUEUED:
        return {
            "error": None,
            "error_details": None,
            "webhook_payload": None,
            "webhook_response": None,
            "completed_date": None,
        }
    if new_status in TERMINAL_STATUSES:
        return {"completed_date": now}
    return {}
