from __future__ import annotations

import json
import re
import threading
from typing import Any

from app.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]] | None = None) -> None:
        self._lock = threading.RLock()
        self._audit_logs = audit_logs if audit_logs is not None else []

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._lock:
            self._audit_logs.append(item)
        return item

    def list_recent(self, *, limit: int = 100, source: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = [dict(x) for x in self._audit_logs if source is None or x.get("source") == source]
        items.sort(key=lambda x: str(x.get("occurred_at") or ""), reverse=True)
        return items[:limit]

    def reset(self) -> None:
        with self._lock:
            self._audit_logs.clear()


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                audit_id TEXT PRIMARY KEY,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                source TEXT,
                actor_id TEXT,
                details JSONB,
                occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(_op)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, level, message, source, actor_id, details, occurred_at
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::timestamptz)
            ON CONFLICT(audit_id) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("level", "info"),
                        item.get("message", ""),
                        item.get("source"),
                        item.get("actor_id"),
                        json.dumps(item.get("details") or {}, ensure_ascii=True, sort_keys=True, default=str),
                        item.get("occurred_at"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(_op)

    def list_recent(self, *, limit: int = 100, source: str | None = None) -> list[dict[str, Any]]:
        where = "WHERE source = %s" if source is not None else ""
        params: tuple[Any, ...] = (source, limit) if source is not None else (limit,)
        sql = f"""
            SELECT audit_id, level, message, source, actor_id, details, occurred_at
            FROM {self._table_name}
            {where}
            ORDER BY occurred_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                audit_id, level, message, src, actor_id, details, occurred_at = row
                out.append(
                    {
                        "audit_id": audit_id,
                        "level": level,
                        "message": message,
                        "source": src,
                        "actor_id": actor_id,
                        "details": details if isinstance(details, dict) else {},
                        "occurred_at": occurred_at.isoformat()
                        if hasattr(occurred_at, "isoformat")
                        else occurred_at,
                    }
                )
            return out

        return self._tx_runner.run_in_tx(_op)
