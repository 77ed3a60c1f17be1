"""Tests for configuration, factory wiring and logging setup."""

import json
import logging

import pytest
from pydantic import ValidationError

from autoflow.config import (
    AppConfig,
    DatabaseType,
    LogLevel,
    MessagingProvider,
    RetryMode,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config,
)
from autoflow.core.error_recovery import BackoffRetryPolicy, NoRetryPolicy
from autoflow.core.exceptions import MessagingError
from autoflow.core.logging import (
    StructuredFormatter,
    clear_logging_context,
    get_logging_context,
    set_logging_context,
    setup_logging,
)
from autoflow.factory import build_channel_factory, build_retry_policy
from autoflow.integrations.whatsapp import LoggingMessagingChannel, WhatsAppCloudChannel

from helpers import START_TIME


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig()

        assert config.max_steps_per_run == 1000
        assert config.retry_mode == RetryMode.NONE
        assert config.database_type == DatabaseType.SQLITE
        assert config.get_database_connect_args() == {"check_same_thread": False}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AUTOFLOW_PORT", "9000")
        monkeypatch.setenv("AUTOFLOW_DEBUG", "yes")
        monkeypatch.setenv("AUTOFLOW_DATABASE_URL", "postgresql://user:pw@db/autoflow")
        monkeypatch.setenv("AUTOFLOW_RETRY_MODE", "backoff")
        monkeypatch.setenv("AUTOFLOW_TRIGGER_WORKERS", "4")
        monkeypatch.setenv("AUTOFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("AUTOFLOW_CORS_ORIGINS", "https://a.test,https://b.test")

        config = AppConfig.from_env()

        assert config.port == 9000
        assert config.debug is True
        assert config.database_type == DatabaseType.POSTGRESQL
        assert config.get_database_connect_args() == {}
        assert config.retry_mode == RetryMode.BACKOFF
        assert config.trigger_workers == 4
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["https://a.test", "https://b.test"]

    @pytest.mark.parametrize("field,value", [
        ("port", 0),
        ("port", 70000),
        ("database_url", "mongodb://localhost/db"),
        ("database_url", ""),
        ("max_steps_per_run", 0),
        ("scheduler_interval", 0),
        ("retry_base_delay", -1.0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_validate_config_rejects_inverted_retry_delays(self):
        config = AppConfig(retry_base_delay=600.0, retry_max_delay=60.0)

        with pytest.raises(ValueError, match="Retry base delay cannot exceed retry max delay"):
            validate_config(config)

    def test_validate_config_creates_directories(self, tmp_path):
        db_path = tmp_path / "data" / "autoflow.db"
        log_path = tmp_path / "logs" / "autoflow.log"

        validate_config(AppConfig(database_url=f"sqlite:///{db_path}", log_file=str(log_path)))

        assert db_path.parent.is_dir()
        assert log_path.parent.is_dir()

    def test_presets(self):
        assert get_development_config().messaging_provider == MessagingProvider.DRY_RUN
        assert get_production_config().cors_origins == []
        testing = get_testing_config()
        assert testing.scheduler_enabled is False
        assert testing.database_url == "sqlite:///:memory:"


class TestFactoryBuilders:
    def test_no_retry_by_default(self):
        policy = build_retry_policy(AppConfig())

        assert isinstance(policy, NoRetryPolicy)
        assert policy.next_attempt_at(MessagingError("boom"), 0, START_TIME) is None

    def test_backoff_policy_uses_config(self):
        config = AppConfig(retry_mode=RetryMode.BACKOFF, retry_max_attempts=3,
                           retry_base_delay=30.0, retry_max_delay=45.0)

        policy = build_retry_policy(config)

        assert isinstance(policy, BackoffRetryPolicy)
        error = MessagingError("WhatsApp API error")
        assert (policy.next_attempt_at(error, 0, START_TIME) - START_TIME).total_seconds() == 30.0
        assert (policy.next_attempt_at(error, 1, START_TIME) - START_TIME).total_seconds() == 45.0
        assert policy.next_attempt_at(error, 2, START_TIME) is None

    def test_channel_factories(self, credentials):
        dry_run = build_channel_factory(AppConfig(messaging_provider=MessagingProvider.DRY_RUN))
        whatsapp = build_channel_factory(AppConfig(whatsapp_api_url="https://graph.test/v19.0"))

        assert isinstance(dry_run(credentials), LoggingMessagingChannel)
        channel = whatsapp(credentials)
        assert isinstance(channel, WhatsAppCloudChannel)
        assert channel.messages_url.startswith("https://graph.test/v19.0/")


class TestLogging:
    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord("autoflow.core.test", logging.INFO, __file__, 10, "node done", None, None)
        record.extra_fields = {"execution_id": "exec_1"}

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "node done"
        assert entry["level"] == "INFO"
        assert entry["execution_id"] == "exec_1"
        assert entry["timestamp"].endswith("Z")

    def test_logging_context_is_restored(self):
        outer = set_logging_context(execution_id="exec_1")
        inner = set_logging_context(node_id="msg")

        assert get_logging_context() == {"execution_id": "exec_1", "node_id": "msg"}
        clear_logging_context(inner)
        assert get_logging_context() == {"execution_id": "exec_1"}
        clear_logging_context(outer)
        assert get_logging_context() == {}

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "autoflow.log"
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level

        try:
            setup_logging(level="INFO", log_file=str(log_file), structured=True)
            logging.getLogger("autoflow.core.test").info("written to file")
            for handler in root.handlers:
                handler.flush()

            lines = log_file.read_text().splitlines()
            assert json.loads(lines[-1])["message"] == "written to file"
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
