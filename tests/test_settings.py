from __future__ import annotations

from app.repositories.system_settings import InMemorySystemSettingsRepository
from app.settings import (
    MAX_CONCURRENT_PROCESSORS_SETTING,
    WEBHOOK_URL_SETTING,
    ServiceConfig,
    SystemSettingsProvider,
)


def test_service_config_defaults_and_invalid_values():
    cfg = ServiceConfig.from_env({"WEBHOOK_TIMEOUT_S": "soon", "PROCESSOR_INTERVAL_MS": "0"})
    assert cfg.webhook_timeout_s == 120.0
    assert cfg.processor_interval_ms == 1
    assert cfg.notify_channel == "candidate_upload_queue"
    assert cfg.max_concurrent_processors == 0
    assert cfg.default_page_size == 20


def test_setting_wins_over_environment_and_is_read_each_call():
    source = InMemorySystemSettingsRepository()
    cfg = ServiceConfig.from_env({"RESUME_PROCESSING_WEBHOOK_URL": "http://env.test/hook"})
    provider = SystemSettingsProvider(source=source, config=cfg)

    assert provider.webhook_url() == "http://env.test/hook"
    source.set(WEBHOOK_URL_SETTING, "http://settings.test/hook")
    assert provider.webhook_url() == "http://settings.test/hook"
    source.set(WEBHOOK_URL_SETTING, "   ")
    assert provider.webhook_url() == "http://env.test/hook"


def test_unreachable_settings_store_falls_back(caplog):
    class BrokenSource:
        def get(self, key):
            raise ConnectionError("db down")

    provider = SystemSettingsProvider(source=BrokenSource(), config=ServiceConfig.from_env({}))
    with caplog.at_level("WARNING", logger="app.settings"):
        assert provider.webhook_url() is None
        assert provider.max_concurrent_processors() == 5
    assert "system_setting_lookup_failed" in caplog.text


def test_max_concurrent_processors_resolution():
    source = InMemorySystemSettingsRepository({MAX_CONCURRENT_PROCESSORS_SETTING: "8"})
    provider = SystemSettingsProvider(source=source, config=ServiceConfig.from_env({}))
    assert provider.max_concurrent_processors() == 8

    source.set(MAX_CONCURRENT_PROCESSORS_SETTING, "-1")
    assert provider.max_concurrent_processors(default=3) == 3

    pinned = SystemSettingsProvider(source=source, config=ServiceConfig.from_env({"MAX_CONCURRENT_PROCESSORS": "2"}))
    assert pinned.max_concurrent_processors() == 2
    assert pinned.snapshot() == {"webhook_configured": False, "max_concurrent_processors": 2}
