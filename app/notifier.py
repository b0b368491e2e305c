from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

QUEUE_UPDATED_MESSAGE = {"type": "queue_updated"}


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for UPLOAD_QUEUE_NOTIFIER=redis; install redis>=5") from exc
    return redis


class NullChangeNotifier:
    def publish(self, channel: str, message: dict[str, Any]) -> None:
        return None


class InMemoryChangeNotifier:
    """Collects published events for tests; select with UPLOAD_QUEUE_NOTIFIER=memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, channel: str, message: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((channel, dict(message)))

    def reset(self) -> None:
        with self._lock:
            self.events.clear()


class RedisChangeNotifier:
    def __init__(self, *, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis notifier")
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def publish(self, channel: str, message: dict[str, Any]) -> None:
        self._client.publish(channel, json.dumps(message, ensure_ascii=True, sort_keys=True))


def notify_queue_changed(notifier: Any, channel: str) -> bool:
    """Best-effort publish; a broken channel never reaches the caller."""
    try:
        notifier.publish(channel, dict(QUEUE_UPDATED_MESSAGE))
    except Exception as exc:
        logger.warning("upload_queue_notify_failed channel=%s error=%s", channel, exc)
        return False
    return True


def create_notifier_from_env(
    environ: Mapping[str, str] | None = None,
) -> NullChangeNotifier | InMemoryChangeNotifier | RedisChangeNotifier:
    env = os.environ if environ is None else environ
    dsn = env.get("REDIS_DSN", "").strip()
    default_backend = "redis" if dsn else "none"
    backend = env.get("UPLOAD_QUEUE_NOTIFIER", default_backend).strip().lower() or default_backend
    if backend == "memory":
        return InMemoryChangeNotifier()
    if backend == "none":
        return NullChangeNotifier()
    if backend == "redis":
        if not dsn:
            raise ValueError("REDIS_DSN must be set when UPLOAD_QUEUE_NOTIFIER=redis")
        return RedisChangeNotifier(dsn=dsn)
    raise RuntimeError(f"unsupported upload queue notifier: {backend}")
