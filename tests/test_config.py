"""
Tests for configuration loading
===============================

Test coverage:
- Defaults for every settings section
- Environment overrides (section prefixes)
- JSON config with ${VAR:-default} placeholders
- Validation of invalid values
- Timestamp helpers and structured logger output
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from chat_relay.core.logger import StructuredLogger
from chat_relay.core.time_manager import format_timestamp, parse_timestamp, utc_now
from chat_relay.infrastructure.config import config_loader
from chat_relay.infrastructure.config.settings import (
    AppSettings,
    HeartbeatSettings,
    LoggingSettings,
    RelaySettings,
    StorageBackend,
    StorageSettings,
)


class TestSettingsDefaults:
    """Test default values"""

    def test_defaults(self):
        settings = AppSettings()

        assert settings.relay.port == 8765
        assert settings.api.port == 5000
        assert settings.relay.default_history_limit == 30
        assert settings.relay.max_history_limit == 100
        assert settings.heartbeat.probe_interval_seconds == 30.0
        assert settings.storage.backend == StorageBackend.MEMORY
        assert settings.storage.save_retries == 1

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RELAY_PORT", "9001")
        monkeypatch.setenv("HEARTBEAT_PROBE_INTERVAL_SECONDS", "5")
        monkeypatch.setenv("STORAGE_BACKEND", "postgres")

        assert RelaySettings().port == 9001
        assert HeartbeatSettings().probe_interval_seconds == 5.0
        assert StorageSettings().backend == StorageBackend.POSTGRES


class TestSettingsValidation:
    """Test validators"""

    def test_probe_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            HeartbeatSettings(probe_interval_seconds=0)

    def test_backlog_must_be_positive(self):
        with pytest.raises(ValidationError):
            RelaySettings(max_send_backlog=0)

    def test_default_limit_cannot_exceed_max(self):
        with pytest.raises(ValidationError):
            RelaySettings(default_history_limit=200, max_history_limit=100)

    def test_dsn_without_password(self):
        assert StorageSettings(password="").dsn == "postgresql://chat_user@localhost:5432/chat"


class TestJsonConfig:
    """Test load_app_settings_from_json"""

    def test_sections_override_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHAT_DB_HOST", "db.internal")
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "relay": {"port": 9100, "max_send_backlog": 64},
            "storage": {"backend": "postgres", "host": "${CHAT_DB_HOST}", "database": "${CHAT_DB_NAME:-chat_test}"},
            "unknown_section": {"ignored": True}
        }))

        settings = config_loader.load_app_settings_from_json(str(config_file))

        assert settings.relay.port == 9100
        assert settings.relay.max_send_backlog == 64
        assert settings.relay.max_history_limit == 100
        assert settings.storage.backend == StorageBackend.POSTGRES
        assert settings.storage.host == "db.internal"
        assert settings.storage.database == "chat_test"

    def test_non_object_root_rejected(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]")

        with pytest.raises(ValueError):
            config_loader.load_app_settings_from_json(str(config_file))

    def test_working_directory_lookup(self, tmp_path, monkeypatch):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.json").write_text(json.dumps({"api": {"port": 5050}}))
        monkeypatch.chdir(tmp_path)

        settings = config_loader.get_settings_from_working_directory(refresh=True)

        assert settings.api.port == 5050
        assert config_loader.get_settings_from_working_directory() is settings

    def test_broken_config_falls_back_to_defaults(self, tmp_path, monkeypatch):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.json").write_text("{not json")
        monkeypatch.chdir(tmp_path)

        settings = config_loader.get_settings_from_working_directory(refresh=True)

        assert settings.api.port == 5000


class TestTimestamps:
    """Test wire timestamp helpers"""

    def test_utc_now_is_millisecond_precision(self):
        instant = utc_now()

        assert instant.tzinfo is not None
        assert instant.microsecond % 1000 == 0

    def test_format_and_parse(self):
        instant = datetime(2026, 10, 19, 12, 0, 0, 123000, tzinfo=timezone.utc)

        text = format_timestamp(instant)

        assert text == "2026-10-19T12:00:00.123Z"
        assert parse_timestamp(text) == instant

    def test_parse_offset_and_naive(self):
        assert parse_timestamp("2026-10-19T14:00:00+02:00") == datetime(2026, 10, 19, 12, tzinfo=timezone.utc)
        assert parse_timestamp("2026-10-19T12:00:00") == datetime(2026, 10, 19, 12, tzinfo=timezone.utc)
        assert parse_timestamp(None) is None

    def test_format_converts_to_utc(self):
        offset = timezone(timedelta(hours=-5))

        assert format_timestamp(datetime(2026, 10, 19, 7, 0, tzinfo=offset)) == "2026-10-19T12:00:00.000Z"

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestStructuredLogger:
    """Test event logging"""

    def test_event_payload_shape(self, caplog):
        logger = StructuredLogger("relay_test.events", LoggingSettings(console_enabled=False))
        logger.logger.propagate = True

        logger.info("relay.test_event", {"client_id": "c1"})

        record = caplog.records[-1]
        assert record.msg == {"event_type": "relay.test_event", "data": {"client_id": "c1"}}

    def test_debug_filtered_by_level(self, caplog):
        logger = StructuredLogger("relay_test.levels", LoggingSettings(level="WARNING", console_enabled=False))
        logger.logger.propagate = True

        logger.debug("relay.noise")
        logger.warning("relay.problem")

        events = [record.msg["event_type"] for record in caplog.records if record.name == "relay_test.levels"]
        assert events == ["relay.problem"]
