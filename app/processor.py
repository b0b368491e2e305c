from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Any, Protocol

from app.audit import AuditTrail
from app.errors import WebhookTransportError
from app.jobs import (
    INVALID_FILE_PATH_ERROR,
    STATUS_ERROR,
    STATUS_INPROGRESS,
    STATUS_SUCCESS,
    WEBHOOK_SKIPPED_REASON,
    UploadJob,
    utcnow_iso,
)
from app.notifier import notify_queue_changed
from app.object_storage import ObjectStorageBackend
from app.repositories.upload_queue import UploadQueueRepository
from app.webhook import DispatchResult, build_payload, caller_inputs, is_valid_webhook_url

logger = logging.getLogger(__name__)


class WebhookUrlProvider(Protocol):
    def webhook_url(self) -> str | None: ...


class Dispatcher(Protocol):
    def post(self, url: str, payload: dict[str, Any]) -> DispatchResult: ...


class ChangeNotifier(Protocol):
    def publish(self, channel: str, message: dict[str, Any]) -> None: ...


@dataclass
class ProcessingResult:
    job: UploadJob
    success: bool
    automation_status: int | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job.as_dict(),
            "success": self.success,
            "automation_status": self.automation_status,
            "message": self.message,
        }


class JobProcessor:
    """Runs one claimed job from file fetch to terminal status.

    The caller owns the job (it is already inprogress). Every path through
    process() ends in a finalize write unless the file source raises, in which
    case the entry point finalizes through fail_job().
    """

    def __init__(
        self,
        *,
        repository: UploadQueueRepository,
        storage: ObjectStorageBackend,
        settings: WebhookUrlProvider,
        dispatcher: Dispatcher,
        notifier: ChangeNotifier,
        channel: str,
        audit: AuditTrail | None = None,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._settings = settings
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._channel = channel
        self._audit = audit

    def process(self, job: UploadJob) -> ProcessingResult:
        logger.info("upload_queue_process_start job_id=%s source=%s", job.id, job.source)
        file_path = (job.file_path or "").strip()
        if not file_path:
            return self._finalize(
                job,
                success=False,
                message=INVALID_FILE_PATH_ERROR,
                changes={
                    "error": INVALID_FILE_PATH_ERROR,
                    "error_details": f"file_path: {job.file_path}",
                },
            )

        data = self._storage.get_bytes(file_path)
        extra: dict[str, Any] = {}
        if job.file_size is None:
            extra["file_size"] = len(data)

        url = self._settings.webhook_url()
        if url is None or not is_valid_webhook_url(url):
            if url:
                logger.warning("upload_queue_webhook_url_invalid job_id=%s url=%s", job.id, url)
            return self._finalize(
                job,
                success=True,
                message=WEBHOOK_SKIPPED_REASON,
                changes={
                    **extra,
                    "error": None,
                    "webhook_response": {"skipped": True, "reason": WEBHOOK_SKIPPED_REASON},
                },
            )
        payload = build_payload(
            job,
            file_url=self._storage.public_url(file_path),
            extra_inputs=caller_inputs(job.webhook_payload),
        )
        self._repository.update_fields(job.id, {"webhook_payload": payload}, expected_status=STATUS_INPROGRESS)
        job.webhook_payload = payload

        try:
            result = self._dispatcher.post(url, payload)
        except WebhookTransportError as exc:
            logger.warning("upload_queue_webhook_transport_failed job_id=%s error=%s", job.id, exc.reason)
            return self._finalize(
                job,
                success=False,
                message=exc.reason,
                changes={
                    **extra,
                    "error": exc.reason,
                    "error_details": traceback.format_exc(),
                    "webhook_response": {"error": exc.reason},
                },
            )

        if result.ok:
            return self._finalize(
                job,
                success=True,
                automation_status=result.status_code,
                changes={
                    **extra,
                    "error": None,
                    "error_details": None,
                    "webhook_response": result.as_response_record(),
                },
            )

        message = f"Webhook responded with status {result.status_code}"
        logger.warning("upload_queue_webhook_rejected job_id=%s status=%s", job.id, result.status_code)
        return self._finalize(
            job,
            success=False,
            automation_status=result.status_code,
            message=message,
            changes={
                **extra,
                "error": message,
                "error_details": f"status={result.status_code} body={result.body}",
                "webhook_response": result.as_response_record(),
            },
        )

    def fail_job(self, job: UploadJob, exc: BaseException) -> UploadJob | None:
        """Finalize a job as error after an unexpected exception in process()."""
        details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        try:
            updated = self._repository.update_status(
                job.id,
                status=STATUS_ERROR,
                expected_status=STATUS_INPROGRESS,
                error=str(exc),
                error_details=details,
                completed_date=utcnow_iso(),
            )
        except Exception as store_exc:
            logger.error("upload_queue_fail_job_store_error job_id=%s error=%s", job.id, store_exc)
            return None
        logger.error("upload_queue_job_failed job_id=%s error=%s", job.id, exc)
        self._record("job failed", level="error", job=job, details={"error": str(exc)})
        self.notify()
        return updated

    def notify(self) -> bool:
        return notify_queue_changed(self._notifier, self._channel)

    def _finalize(
        self,
        job: UploadJob,
        *,
        success: bool,
        changes: dict[str, Any],
        automation_status: int | None = None,
        message: str | None = None,
    ) -> ProcessingResult:
        status = STATUS_SUCCESS if success else STATUS_ERROR
        updated = self._repository.update_status(
            job.id,
            status=status,
            expected_status=STATUS_INPROGRESS,
            completed_date=utcnow_iso(),
            **changes,
        )
        if updated is None:
            # Cancelled (or deleted) by an operator while in flight; keep their write.
            current = self._repository.get_by_id(job.id)
            logger.warning(
                "upload_queue_finalize_skipped job_id=%s outcome=%s current_status=%s",
                job.id,
                status,
                current.status if current is not None else None,
            )
            updated = current if current is not None else job
        logger.info(
            "upload_queue_process_done job_id=%s status=%s automation_status=%s",
            job.id,
            updated.status,
            automation_status,
        )
        self._record(
            "job processed",
            level="info" if success else "warning",
            job=updated,
            details={"status": updated.status, "automation_status": automation_status, "message": message},
        )
        self.notify()
        return ProcessingResult(
            job=updated,
            success=success,
            automation_status=automation_status,
            message=message,
        )

    def _record(self, message: str, *, level: str, job: UploadJob, details: dict[str, Any]) -> None:
        if self._audit is None:
            return
        self._audit.record(
            message,
            level=level,
            actor_id=job.created_by,
            details={"job_id": job.id, "file_name": job.file_name, **details},
        )
