from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

WEBHOOK_URL_SETTING = "resumeProcessingWebhookUrl"
MAX_CONCURRENT_PROCESSORS_SETTING = "maxConcurrentProcessors"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("invalid_int_env name=%s value=%s default=%s", name, raw, default)
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("invalid_float_env name=%s value=%s default=%s", name, raw, default)
        return default


@dataclass(frozen=True)
class ServiceConfig:
    processor_api_key: str
    webhook_url_default: str
    webhook_timeout_s: float
    notify_channel: str
    max_concurrent_processors: int
    processor_interval_ms: int
    max_backoff_ms: int
    default_page_size: int

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        return cls(
            processor_api_key=str(env.get("PROCESSOR_API_KEY", "")).strip(),
            webhook_url_default=str(env.get("RESUME_PROCESSING_WEBHOOK_URL", "")).strip(),
            webhook_timeout_s=_env_float(env, "WEBHOOK_TIMEOUT_S", default=120.0),
            notify_channel=str(env.get("UPLOAD_QUEUE_CHANNEL", "candidate_upload_queue")).strip()
            or "candidate_upload_queue",
            max_concurrent_processors=_env_int(env, "MAX_CONCURRENT_PROCESSORS", default=0, minimum=0),
            processor_interval_ms=_env_int(env, "PROCESSOR_INTERVAL_MS", default=5000, minimum=1),
            max_backoff_ms=_env_int(env, "PROCESSOR_MAX_BACKOFF_MS", default=60000, minimum=1),
            default_page_size=_env_int(env, "UPLOAD_QUEUE_PAGE_SIZE", default=20, minimum=1),
        )


class SettingsSource(Protocol):
    def get(self, key: str) -> str | None: ...


class SystemSettingsProvider:
    """Read-through lookup of system settings with environment fallbacks.

    Values are read on every call so an operator edit on the settings page
    applies to the next job without a restart.
    """

    def __init__(self, *, source: SettingsSource | None, config: ServiceConfig) -> None:
        self._source = source
        self._config = config

    def _lookup(self, key: str) -> str | None:
        if self._source is None:
            return None
        try:
            value = self._source.get(key)
        except Exception as exc:
            logger.warning("system_setting_lookup_failed key=%s error=%s", key, exc)
            return None
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def webhook_url(self) -> str | None:
        return self._lookup(WEBHOOK_URL_SETTING) or self._config.webhook_url_default or None

    def max_concurrent_processors(self, default: int = 5) -> int:
        if self._config.max_concurrent_processors > 0:
            return self._config.max_concurrent_processors
        raw = self._lookup(MAX_CONCURRENT_PROCESSORS_SETTING)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return value if value > 0 else default

    def snapshot(self) -> dict[str, Any]:
        return {
            "webhook_configured": self.webhook_url() is not None,
            "max_concurrent_processors": self.max_concurrent_processors(),
        }
