from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.jobs import utcnow_iso
from app.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from app.security import redact_sensitive

logger = logging.getLogger(__name__)

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class AuditTrail:
    """Appends queue events to the audit_logs table and mirrors them to the log.

    Persisting an audit record must never change the outcome of the request
    that produced it, so repository failures are logged and dropped.
    """

    def __init__(self, *, repository: InMemoryAuditLogsRepository | PostgresAuditLogsRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> InMemoryAuditLogsRepository | PostgresAuditLogsRepository:
        return self._repository

    def record(
        self,
        message: str,
        *,
        level: str = "info",
        source: str = "upload_queue",
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        item = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "level": level,
            "message": message,
            "source": source,
            "actor_id": actor_id,
            "details": redact_sensitive(dict(details or {})),
            "occurred_at": utcnow_iso(),
        }
        logger.log(
            _LEVELS.get(level, logging.INFO),
            "audit message=%s source=%s actor=%s details=%s",
            message,
            source,
            actor_id,
            item["details"],
        )
        try:
            return self._repository.append(log=item)
        except Exception as exc:
            logger.warning("audit_append_failed message=%s error=%s", message, exc)
            return None


def create_audit_trail_from_env(environ: Mapping[str, str] | None = None) -> AuditTrail:
    env = os.environ if environ is None else environ
    backend = env.get("AUDIT_LOG_BACKEND", "memory").strip().lower() or "memory"
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when AUDIT_LOG_BACKEND=postgres")
        table_name = env.get("AUDIT_LOG_TABLE", "audit_logs").strip() or "audit_logs"
        return AuditTrail(
            repository=PostgresAuditLogsRepository(tx_runner=PostgresTxRunner(dsn), table_name=table_name)
        )
    if backend != "memory":
        raise RuntimeError(f"unsupported audit log backend: {backend}")
    return AuditTrail(repository=InMemoryAuditLogsRepository())
