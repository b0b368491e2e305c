from __future__ import annotations

import logging
import traceback

from fastapi import APIRouter, File, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from app.errors import ApiError
from app.routes._deps import actor_id_from_request
from app.schemas import (
    BlockingProcessRequest,
    UploadQueueCreateRequest,
    UploadQueueUpdateRequest,
    job_envelope,
    page_envelope,
)
from app.security import verify_processor_api_key
from app.upload_queue import get_upload_queue_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload-queue", tags=["upload-queue"])

NO_QUEUED_JOBS_MESSAGE = "No queued jobs"


@router.post("/process")
def process_next_upload(x_api_key: str | None = Header(default=None, alias="x-api-key")):
    service = get_upload_queue_service()
    verify_processor_api_key(provided=x_api_key, expected=service.config.processor_api_key)
    try:
        result = service.process_next()
    except Exception as exc:
        logger.exception("upload_queue_process_failed error=%s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc), "stack": traceback.format_exc()})
    if result is None:
        return {"message": NO_QUEUED_JOBS_MESSAGE}
    return {"job": job_envelope(result.job), "automation_status": result.automation_status}


@router.post("/blocking-process")
def blocking_process_upload(payload: BlockingProcessRequest, request: Request):
    service = get_upload_queue_service()
    try:
        result = service.submit_blocking(fields=payload.model_dump(), actor_id=actor_id_from_request(request))
    except ApiError:
        raise
    except Exception as exc:
        logger.exception("upload_queue_blocking_failed error=%s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    if not result.success:
        return JSONResponse(status_code=500, content={"error": result.message, "job": job_envelope(result.job)})
    return result.as_dict()


@router.post("/upload-file")
async def upload_resume_file(file: UploadFile = File(...)):
    service = get_upload_queue_service()
    data = await file.read()
    if not data:
        raise ApiError(
            code="UPLOAD_QUEUE_FILE_EMPTY",
            message="uploaded file is empty",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    file_path = service.upload_file(
        filename=file.filename or "upload.bin",
        data=data,
        content_type=file.content_type,
    )
    return {"file_path": file_path}


@router.get("/audit-logs")
def list_upload_queue_audit_logs(
    limit: int = Query(default=100, ge=1, le=500),
    source: str | None = Query(default=None),
):
    return {"data": get_upload_queue_service().audit.repository.list_recent(limit=limit, source=source)}


@router.get("")
def list_upload_queue(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    items, total = get_upload_queue_service().list_jobs(limit=limit, offset=offset)
    return page_envelope(items, total)


@router.post("", status_code=201)
def create_upload_queue_item(payload: UploadQueueCreateRequest, request: Request):
    job = get_upload_queue_service().enqueue(fields=payload.model_dump(), actor_id=actor_id_from_request(request))
    return job_envelope(job)


@router.get("/{job_id}")
def get_upload_queue_item(job_id: str):
    return job_envelope(get_upload_queue_service().get(job_id))


@router.patch("/{job_id}")
def update_upload_queue_item(job_id: str, payload: UploadQueueUpdateRequest, request: Request):
    job = get_upload_queue_service().update(
        job_id,
        fields=payload.model_dump(exclude_unset=True),
        actor_id=actor_id_from_request(request),
    )
    return job_envelope(job)


@router.delete("/{job_id}")
def delete_upload_queue_item(job_id: str, request: Request):
    get_upload_queue_service().delete(job_id, actor_id=actor_id_from_request(request))
    return {"success": True}
