"""Unit tests for configuration loading."""

import pydantic
import pytest

from tenant_migration_worker.__main__ import apply_args, parse_args
from tenant_migration_worker.config import GraphAPIConfig, KafkaConfig, Settings, WorkerConfig


class TestSettings:
    """Test cases for Settings."""

    def test_defaults(self):
        """Test the defaults used by the engine."""
        settings = Settings()

        assert settings.kafka.enable_auto_commit is False
        assert settings.graph.page_size == 50
        assert settings.graph.drive_page_size == 100
        assert settings.graph.max_retries == 3
        assert settings.graph.chunk_size_bytes % (320 * 1024) == 0
        assert settings.graph.chunk_threshold_bytes == 4 * 1024 * 1024
        assert settings.worker.control_topic == "migration.control"

    def test_auto_commit_rejected(self):
        """Test auto-commit cannot be enabled."""
        with pytest.raises(pydantic.ValidationError):
            KafkaConfig(enable_auto_commit=True)

    def test_environment_overrides(self, monkeypatch):
        """Test sub-configurations read their prefixed variables."""
        monkeypatch.setenv("WORKER_MAIL_CONCURRENCY", "3")
        monkeypatch.setenv("GRAPH_API_BASE_URL", "https://graph.example.test/v1.0")

        assert WorkerConfig().mail_concurrency == 3
        assert GraphAPIConfig().api_base_url == "https://graph.example.test/v1.0"

    def test_concurrency_must_be_positive(self):
        """Test a queue cannot be configured with zero slots."""
        with pytest.raises(pydantic.ValidationError):
            WorkerConfig(teams_concurrency=0)

    def test_queue_selection(self):
        """Test the enabled queue list is normalized and validated."""
        assert WorkerConfig(queues=" mail, backup ").enabled_queues == ["mail", "backup"]

        with pytest.raises(pydantic.ValidationError):
            WorkerConfig(queues="mail,calendar")


class TestCommandLine:
    """Test cases for command-line overrides."""

    def test_no_arguments_keep_settings(self):
        """Test settings are unchanged without flags."""
        base = Settings()

        assert apply_args(base, parse_args([])) is base

    def test_overrides(self):
        """Test flags override queue selection, health port and log level."""
        base = Settings()

        args = parse_args(["--queues", "teams", "--health-port", "9000", "--log-level", "debug"])

        updated = apply_args(base, args)

        assert updated.worker.enabled_queues == ["teams"]
        assert updated.worker.health_port == 9000
        assert updated.worker.teams_concurrency == base.worker.teams_concurrency
        assert updated.logging.level == "DEBUG"
        assert base.worker.enabled_queues == ["mail", "files", "sites", "teams", "backup"]
