from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from typing import Any

from app.audit import AuditTrail, create_audit_trail_from_env
from app.claimer import JobClaimer
from app.db.postgres import PostgresTxRunner
from app.errors import ApiError
from app.jobs import (
    NON_NULL_COLUMNS,
    OPERATOR_COLUMNS,
    STATUS_INPROGRESS,
    STATUS_QUEUED,
    UploadJob,
    transition_side_effects,
    utcnow_iso,
    validate_transition,
)
from app.notifier import create_notifier_from_env
from app.object_storage import ObjectStorageBackend, build_upload_path, create_object_storage_from_env
from app.processor import ChangeNotifier, Dispatcher, JobProcessor, ProcessingResult
from app.repositories.system_settings import InMemorySystemSettingsRepository, PostgresSystemSettingsRepository
from app.repositories.upload_queue import UploadQueueRepository, create_upload_queue_repository_from_env
from app.settings import ServiceConfig, SystemSettingsProvider
from app.webhook import WebhookDispatcher, caller_inputs

logger = logging.getLogger(__name__)

# Body keys a client may set when creating a job; everything else is owned by the service.
_CREATE_FIELDS = (
    "file_name",
    "file_size",
    "file_path",
    "source",
    "upload_id",
    "position_id",
    "position_title",
    "position_description",
    "position_level",
)


def _not_found(job_id: str) -> ApiError:
    return ApiError(
        code="UPLOAD_QUEUE_NOT_FOUND",
        message=f"upload queue item not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _invalid_update(message: str) -> ApiError:
    return ApiError(
        code="UPLOAD_QUEUE_UPDATE_INVALID",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _require_file_path(fields: Mapping[str, Any]) -> str:
    file_path = str(fields.get("file_path") or "").strip()
    if not file_path:
        raise ApiError(
            code="UPLOAD_QUEUE_FILE_PATH_REQUIRED",
            message="file_path is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return file_path


class UploadQueueService:
    """Entry points over the upload queue: async drain, blocking submit and operator edits."""

    def __init__(
        self,
        *,
        repository: UploadQueueRepository,
        storage: ObjectStorageBackend,
        settings: SystemSettingsProvider,
        dispatcher: Dispatcher,
        notifier: ChangeNotifier,
        config: ServiceConfig,
        audit: AuditTrail,
        settings_repository: Any = None,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.settings = settings
        self.settings_repository = settings_repository
        self.notifier = notifier
        self.config = config
        self.audit = audit
        self.claimer = JobClaimer(repository=repository)
        self.processor = JobProcessor(
            repository=repository,
            storage=storage,
            settings=settings,
            dispatcher=dispatcher,
            notifier=notifier,
            channel=config.notify_channel,
            audit=audit,
        )

    def process_next(self) -> ProcessingResult | None:
        """Claim and process at most one queued job.

        Returns None when the queue is empty; subscribers are still told to
        refresh so the dashboard converges after external edits.
        """
        job = self.claimer.claim_next_queued()
        if job is None:
            self.processor.notify()
            return None
        return self._run(job)

    def submit_blocking(self, *, fields: Mapping[str, Any], actor_id: str | None) -> ProcessingResult:
        file_path = _require_file_path(fields)
        values = {k: fields.get(k) for k in _CREATE_FIELDS if fields.get(k) is not None}
        values["file_path"] = file_path
        values.setdefault("file_name", file_path.rsplit("/", 1)[-1])
        webhook_payload = fields.get("webhook_payload")
        now = utcnow_iso()
        # Inserted already owned by this request so no claimer can pick it up.
        job = UploadJob(
            **values,
            status=STATUS_INPROGRESS,
            created_by=actor_id,
            webhook_payload=dict(webhook_payload) if isinstance(webhook_payload, dict) else None,
            upload_date=now,
            updated_at=now,
        )
        if fields.get("status") not in (None, STATUS_INPROGRESS):
            logger.info("upload_queue_blocking_status_overridden requested=%s", fields.get("status"))
        inserted = self.repository.insert(job)
        self.audit.record(
            "blocking upload submitted",
            actor_id=actor_id,
            details={"job_id": inserted.id, "file_name": inserted.file_name},
        )
        return self._run(inserted)

    def _run(self, job: UploadJob) -> ProcessingResult:
        try:
            return self.processor.process(job)
        except Exception as exc:
            self.processor.fail_job(job, exc)
            raise

    def enqueue(self, *, fields: Mapping[str, Any], actor_id: str | None) -> UploadJob:
        file_path = _require_file_path(fields)
        values = {k: fields.get(k) for k in _CREATE_FIELDS if fields.get(k) is not None}
        values["file_path"] = file_path
        values.setdefault("file_name", file_path.rsplit("/", 1)[-1])
        job = self.repository.insert(UploadJob(**values, status=STATUS_QUEUED, created_by=actor_id))
        logger.info("upload_queue_enqueued job_id=%s file_name=%s", job.id, job.file_name)
        self.audit.record("upload enqueued", actor_id=actor_id, details={"job_id": job.id, "file_name": job.file_name})
        self.processor.notify()
        return job

    def list_jobs(self, *, limit: int | None = None, offset: int = 0) -> tuple[list[UploadJob], int]:
        page_size = limit if limit is not None else self.config.default_page_size
        return self.repository.list_jobs(limit=page_size, offset=max(0, offset))

    def get(self, job_id: str) -> UploadJob:
        job = self.repository.get_by_id(job_id)
        if job is None:
            raise _not_found(job_id)
        return job

    def update(self, job_id: str, *, fields: Mapping[str, Any], actor_id: str | None) -> UploadJob:
        changes = dict(fields)
        if not changes:
            raise ApiError(
                code="UPLOAD_QUEUE_UPDATE_EMPTY",
                message="No fields to update",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        not_editable = sorted(set(changes) - OPERATOR_COLUMNS)
        if not_editable:
            raise _invalid_update(f"fields not editable: {', '.join(not_editable)}")
        cleared = sorted(k for k in NON_NULL_COLUMNS if k in changes and changes[k] is None)
        if cleared:
            raise _invalid_update(f"fields must not be null: {', '.join(cleared)}")
        current = self.get(job_id)
        new_status = changes.pop("status", None)
        if new_status is not None and new_status != current.status:
            validate_transition(current.status, new_status)
            changes.update(transition_side_effects(new_status, now=utcnow_iso()))
            if new_status == STATUS_QUEUED:
                # A retried blocking job keeps the inputs its caller supplied.
                extras = caller_inputs(current.webhook_payload)
                changes["webhook_payload"] = {"inputs": extras} if extras else None
            changes["status"] = new_status
        if not changes:
            return current
        updated = self.repository.update_fields(job_id, changes, expected_status=current.status)
        if updated is None:
            if self.repository.get_by_id(job_id) is None:
                raise _not_found(job_id)
            raise ApiError(
                code="UPLOAD_QUEUE_CONFLICT",
                message="upload queue item changed concurrently, reload and retry",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        logger.info(
            "upload_queue_updated job_id=%s from_status=%s to_status=%s",
            job_id,
            current.status,
            updated.status,
        )
        self.audit.record(
            "upload queue item updated",
            actor_id=actor_id,
            details={"job_id": job_id, "from_status": current.status, "fields": sorted(fields)},
        )
        self.processor.notify()
        return updated

    def delete(self, job_id: str, *, actor_id: str | None) -> None:
        if not self.repository.delete(job_id):
            raise _not_found(job_id)
        self.audit.record("upload queue item deleted", actor_id=actor_id, details={"job_id": job_id})
        self.processor.notify()

    def upload_file(self, *, filename: str, data: bytes, content_type: str | None) -> str:
        path = build_upload_path(filename)
        stored = self.storage.put_bytes(path, data, content_type=content_type)
        logger.info("upload_queue_file_stored path=%s size=%s", stored, len(data))
        return stored

    def reset(self) -> None:
        for component in (self.repository, self.storage, self.settings_repository, self.notifier, self.audit.repository):
            reset = getattr(component, "reset", None)
            if callable(reset):
                reset()


def _create_settings_repository(env: Mapping[str, str]) -> Any:
    backend = env.get("SYSTEM_SETTINGS_BACKEND", "memory").strip().lower() or "memory"
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when SYSTEM_SETTINGS_BACKEND=postgres")
        return PostgresSystemSettingsRepository(tx_runner=PostgresTxRunner(dsn))
    if backend != "memory":
        raise RuntimeError(f"unsupported system settings backend: {backend}")
    return InMemorySystemSettingsRepository()


def create_upload_queue_service_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    dispatcher: Dispatcher | None = None,
) -> UploadQueueService:
    env = os.environ if environ is None else environ
    config = ServiceConfig.from_env(env)
    settings_repository = _create_settings_repository(env)
    return UploadQueueService(
        repository=create_upload_queue_repository_from_env(env),
        storage=create_object_storage_from_env(env),
        settings=SystemSettingsProvider(source=settings_repository, config=config),
        dispatcher=dispatcher or WebhookDispatcher(timeout_s=config.webhook_timeout_s),
        notifier=create_notifier_from_env(env),
        config=config,
        audit=create_audit_trail_from_env(env),
        settings_repository=settings_repository,
    )


_service_lock = threading.Lock()
_service: UploadQueueService | None = None


def get_upload_queue_service() -> UploadQueueService:
    global _service
    with _service_lock:
        if _service is None:
            _service = create_upload_queue_service_from_env()
        return _service


def set_upload_queue_service(service: UploadQueueService | None) -> None:
    global _service
    with _service_lock:
        _service = service

