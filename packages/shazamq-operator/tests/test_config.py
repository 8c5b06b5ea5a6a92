"""Tests for environment-based operator settings."""

import pydantic
import pytest

from shazamq_operator.config import OperatorSettings


class TestOperatorSettings:
    """Tests for OperatorSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SHAZAMQ_OPERATOR_WATCH_NAMESPACE", raising=False)
        settings = OperatorSettings(identity="operator-a")

        assert settings.watch_namespace is None
        assert settings.progress_requeue_seconds == 10.0
        assert settings.resync_interval_seconds == 300.0
        assert settings.lease_duration_seconds == 15.0
        assert settings.renew_interval_seconds == 5.0
        assert settings.lease_name == "shazamq-operator-leader"
        assert settings.worker_count == 4
        assert settings.journal_path is None

    def test_identity_defaults_to_hostname(self):
        assert OperatorSettings().identity

    def test_environment_override(self, monkeypatch):
        """SHAZAMQ_OPERATOR_ variables override defaults."""
        monkeypatch.setenv("SHAZAMQ_OPERATOR_WATCH_NAMESPACE", "streaming")
        monkeypatch.setenv("SHAZAMQ_OPERATOR_RESYNC_INTERVAL_SECONDS", "120")
        monkeypatch.setenv("SHAZAMQ_OPERATOR_JOURNAL_PATH", "/var/lib/shazamq/events.db")

        settings = OperatorSettings()

        assert settings.watch_namespace == "streaming"
        assert settings.resync_interval_seconds == 120.0
        assert str(settings.journal_path) == "/var/lib/shazamq/events.db"

    def test_explicit_values_win_over_environment(self, monkeypatch):
        monkeypatch.setenv("SHAZAMQ_OPERATOR_WORKER_COUNT", "8")
        assert OperatorSettings(worker_count=2).worker_count == 2

    def test_frozen(self):
        settings = OperatorSettings(identity="operator-a")
        with pytest.raises(pydantic.ValidationError):
            settings.worker_count = 9

    def test_worker_count_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            OperatorSettings(worker_count=0)
