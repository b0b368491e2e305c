from __future__ import annotations

import re
import threading
from typing import Any

from app.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemorySystemSettingsRepository:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._lock = threading.RLock()
        self._values = dict(values or {})

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str | None) -> None:
        with self._lock:
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = str(value)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class PostgresSystemSettingsRepository:
    """Read-only view of the key/value system_settings table owned by the settings pages."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "system_settings") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def get(self, key: str) -> str | None:
        sql = f"SELECT value FROM {self._table_name} WHERE key = %s LIMIT 1"

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (key,))
                row = cur.fetchone()
            if row is None or row[0] is None:
                return None
            return str(row[0])

        return self._tx_runner.run_in_tx(_op)
