from app.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from app.repositories.system_settings import InMemorySystemSettingsRepository, PostgresSystemSettingsRepository
from app.repositories.upload_queue import (
    InMemoryUploadQueueRepository,
    PostgresUploadQueueRepository,
    SqliteUploadQueueRepository,
    create_upload_queue_repository_from_env,
)

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemorySystemSettingsRepository",
    "PostgresSystemSettingsRepository",
    "InMemoryUploadQueueRepository",
    "PostgresUploadQueueRepository",
    "SqliteUploadQueueRepository",
    "create_upload_queue_repository_from_env",
]
