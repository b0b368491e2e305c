from __future__ import annotations

import json
import os
import re
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.jobs import (
    EDITABLE_COLUMNS,
    JOB_COLUMNS,
    JSON_COLUMNS,
    STATUS_INPROGRESS,
    STATUS_QUEUED,
    UploadJob,
    utcnow_iso,
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _checked_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - EDITABLE_COLUMNS)
    if unknown:
        raise ValueError(f"unknown upload_queue columns: {', '.join(unknown)}")
    return dict(fields)


class InMemoryUploadQueueRepository:
    """Process-local job store; the claim is serialized by one re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, UploadJob] = {}

    def insert(self, job: UploadJob) -> UploadJob:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"duplicate upload_queue id: {job.id}")
            self._jobs[job.id] = replace(job)
            return replace(job)

    def claim_next_queued(self) -> UploadJob | None:
        with self._lock:
            queued = [j for j in self._jobs.values() if j.status == STATUS_QUEUED]
            if not queued:
                return None
            oldest = min(queued, key=lambda j: (j.upload_date, j.id))
            oldest.status = STATUS_INPROGRESS
            oldest.updated_at = utcnow_iso()
            return replace(oldest)

    def update_fields(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> UploadJob | None:
        changes = _checked_fields(fields)
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            if expected_status is not None and current.status != expected_status:
                return None
            updated = replace(current, **changes, updated_at=utcnow_iso())
            self._jobs[job_id] = updated
            return replace(updated)

    def update_status(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None = None,
        **changes: Any,
    ) -> UploadJob | None:
        return self.update_fields(job_id, {"status": status, **changes}, expected_status=expected_status)

    def get_by_id(self, job_id: str) -> UploadJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def list_jobs(self, *, limit: int = 20, offset: int = 0) -> tuple[list[UploadJob], int]:
        with self._lock:
            ordered = sorted(self._jobs.values(), key=lambda j: (j.upload_date, j.id), reverse=True)
            page = ordered[offset : offset + limit]
            return [replace(j) for j in page], len(ordered)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


class SqliteUploadQueueRepository:
    """SQLite-backed job store for single-host deployments and replay tests."""

    def __init__(self, db_path: str | Path, *, table_name: str = "upload_queue") -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                    id TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL DEFAULT '',
                    file_size INTEGER,
                    file_path TEXT,
                    status TEXT NOT NULL,
                    source TEXT,
                    upload_id TEXT,
                    created_by TEXT,
                    position_id TEXT,
                    position_title TEXT,
                    position_description TEXT,
                    position_level TEXT,
                    webhook_payload TEXT,
                    webhook_response TEXT,
                    error TEXT,
                    error_details TEXT,
                    upload_date TEXT NOT NULL,
                    completed_date TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS idx_{self._table_name}_status_upload_date
                ON {self._table_name}(status, upload_date)
                """
            )

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> UploadJob:
        data = {key: row[key] for key in row.keys()}
        for column in JSON_COLUMNS:
            raw = data.get(column)
            data[column] = json.loads(raw) if isinstance(raw, str) and raw else None
        return UploadJob.from_mapping(data)

    def _select_by_id(self, conn: sqlite3.Connection, job_id: str) -> UploadJob | None:
        row = conn.execute(f"SELECT * FROM {self._table_name} WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row is not None else None

    def insert(self, job: UploadJob) -> UploadJob:
        values = job.as_dict()
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {self._table_name} ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                    tuple(self._encode(col, values[col]) for col in JOB_COLUMNS),
                )
        return replace(job)

    def claim_next_queued(self) -> UploadJob | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"""
                    SELECT id FROM {self._table_name}
                    WHERE status = ?
                    ORDER BY upload_date ASC, id ASC
                    LIMIT 1
                    """,
                    (STATUS_QUEUED,),
                ).fetchone()
                if row is None:
                    return None
                updated = conn.execute(
                    f"UPDATE {self._table_name} SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (STATUS_INPROGRESS, utcnow_iso(), row["id"], STATUS_QUEUED),
                ).rowcount
                if updated != 1:
                    return None
                return self._select_by_id(conn, row["id"])

    def update_fields(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> UploadJob | None:
        changes = _checked_fields(fields)
        changes["updated_at"] = utcnow_iso()
        assignments = ", ".join(f"{col} = ?" for col in changes)
        params: list[Any] = [self._encode(col, value) for col, value in changes.items()]
        where = "id = ?"
        params.append(job_id)
        if expected_status is not None:
            where += " AND status = ?"
            params.append(expected_status)
        with self._lock:
            with self._connect() as conn:
                updated = conn.execute(
                    f"UPDATE {self._table_name} SET {assignments} WHERE {where}",
                    tuple(params),
                ).rowcount
                if updated != 1:
                    return None
                return self._select_by_id(conn, job_id)

    def update_status(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None = None,
        **changes: Any,
    ) -> UploadJob | None:
        return self.update_fields(job_id, {"status": status, **changes}, expected_status=expected_status)

    def get_by_id(self, job_id: str) -> UploadJob | None:
        with self._lock:
            with self._connect() as conn:
                return self._select_by_id(conn, job_id)

    def list_jobs(self, *, limit: int = 20, offset: int = 0) -> tuple[list[UploadJob], int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM {self._table_name} ORDER BY upload_date DESC, id DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
                total = conn.execute(f"SELECT COUNT(1) AS cnt FROM {self._table_name}").fetchone()
        return [self._row_to_job(row) for row in rows], int(total["cnt"]) if total is not None else 0

    def delete(self, job_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                return conn.execute(f"DELETE FROM {self._table_name} WHERE id = ?", (job_id,)).rowcount == 1

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"DELETE FROM {self._table_name}")


class PostgresUploadQueueRepository:
    """upload_queue on PostgreSQL; the claim relies on FOR UPDATE SKIP LOCKED."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "upload_queue") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._columns = ", ".join(JOB_COLUMNS)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                id TEXT PRIMARY KEY,
                file_name TEXT NOT NULL DEFAULT '',
                file_size BIGINT,
                file_path TEXT,
                status TEXT NOT NULL DEFAULT 'queued',
                source TEXT,
                upload_id TEXT,
                created_by TEXT,
                position_id TEXT,
                position_title TEXT,
                position_description TEXT,
                position_level TEXT,
                webhook_payload JSONB,
                webhook_response JSONB,
                error TEXT,
                error_details TEXT,
                upload_date TIMESTAMPTZ NOT NULL DEFAULT now(),
                completed_date TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            CREATE INDEX IF NOT EXISTS idx_{self._table_name}_status_upload_date
            ON {self._table_name}(status, upload_date);
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(_op)

    @staticmethod
    def _placeholder(column: str) -> str:
        if column in JSON_COLUMNS:
            return "%s::jsonb"
        if column in {"upload_date", "completed_date", "updated_at"}:
            return "%s::timestamptz"
        return "%s"

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    @staticmethod
    def _row_to_job(row: tuple[Any, ...]) -> UploadJob:
        data = dict(zip(JOB_COLUMNS, row))
        for column in JSON_COLUMNS:
            raw = data.get(column)
            if isinstance(raw, str):
                data[column] = json.loads(raw) if raw else None
            elif not isinstance(raw, dict):
                data[column] = None
        return UploadJob.from_mapping(data)

    def insert(self, job: UploadJob) -> UploadJob:
        values = job.as_dict()
        placeholders = ", ".join(self._placeholder(col) for col in JOB_COLUMNS)
        sql = f"""
            INSERT INTO {self._table_name} ({self._columns})
            VALUES ({placeholders})
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> UploadJob:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(self._encode(col, values[col]) for col in JOB_COLUMNS))
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else replace(job)

        return self._tx_runner.run_in_tx(_op)

    def claim_next_queued(self) -> UploadJob | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s, updated_at = now()
            WHERE id = (
                SELECT id FROM {self._table_name}
                WHERE status = %s
                ORDER BY upload_date ASC, id ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> UploadJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, (STATUS_INPROGRESS, STATUS_QUEUED))
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(_op)

    def update_fields(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None = None,
    ) -> UploadJob | None:
        changes = _checked_fields(fields)
        assignments = [f"{col} = {self._placeholder(col)}" for col in changes]
        assignments.append("updated_at = now()")
        params: list[Any] = [self._encode(col, value) for col, value in changes.items()]
        where = "id = %s"
        params.append(job_id)
        if expected_status is not None:
            where += " AND status = %s"
            params.append(expected_status)
        sql = f"""
            UPDATE {self._table_name}
            SET {', '.join(assignments)}
            WHERE {where}
            RETURNING {self._columns}
        """

        def _op(conn: Any) -> UploadJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(_op)

    def update_status(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None = None,
        **changes: Any,
    ) -> UploadJob | None:
        return self.update_fields(job_id, {"status": status, **changes}, expected_status=expected_status)

    def get_by_id(self, job_id: str) -> UploadJob | None:
        sql = f"SELECT {self._columns} FROM {self._table_name} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> UploadJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(_op)

    def list_jobs(self, *, limit: int = 20, offset: int = 0) -> tuple[list[UploadJob], int]:
        page_sql = f"""
            SELECT {self._columns} FROM {self._table_name}
            ORDER BY upload_date DESC, id DESC
            LIMIT %s OFFSET %s
        """
        count_sql = f"SELECT COUNT(*) FROM {self._table_name}"

        def _op(conn: Any) -> tuple[list[UploadJob], int]:
            with conn.cursor() as cur:
                cur.execute(page_sql, (limit, offset))
                rows = cur.fetchall() or []
                cur.execute(count_sql)
                total = cur.fetchone()
            return [self._row_to_job(row) for row in rows], int(total[0]) if total else 0

        return self._tx_runner.run_in_tx(_op)

    def delete(self, job_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE id = %s RETURNING id"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(_op)

    def reset(self) -> None:
        sql = f"DELETE FROM {self._table_name}"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(_op)


UploadQueueRepository = InMemoryUploadQueueRepository | SqliteUploadQueueRepository | PostgresUploadQueueRepository


def create_upload_queue_repository_from_env(environ: Mapping[str, str] | None = None) -> UploadQueueRepository:
    env = os.environ if environ is None else environ
    backend = env.get("UPLOAD_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    table_name = env.get("UPLOAD_QUEUE_TABLE", "upload_queue").strip() or "upload_queue"
    if backend == "memory":
        return InMemoryUploadQueueRepository()
    if backend == "sqlite":
        db_path = env.get("UPLOAD_QUEUE_SQLITE_PATH", ".runtime/upload_queue.sqlite3")
        return SqliteUploadQueueRepository(db_path, table_name=table_name)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when UPLOAD_QUEUE_BACKEND=postgres")
        return PostgresUploadQueueRepository(tx_runner=PostgresTxRunner(dsn), table_name=table_name)
    raise RuntimeError(f"unsupported upload queue backend: {backend}")
