"""
Unit tests for configuration validation
"""
import pytest

from idverify import config
from idverify.consensus import ConsensusSettings
from idverify.exceptions import ConfigurationError


class TestValidateConfiguration:
    def test_defaults_are_valid(self):
        assert config.validate_configuration() is True

    @pytest.mark.parametrize(
        "name, value",
        [
            ("ACCEPTANCE_FLOOR", 120.0),
            ("EMBEDDING_BLEND", 1.5),
            ("SCORER_TIMEOUT_SECONDS", 0.0),
            ("MAX_WORKERS", 0),
            ("AUDIT_RETRY_ATTEMPTS", 0),
            ("LOG_LEVEL", "VERBOSE"),
            ("QUALITY_PENALTY", -0.1),
        ],
    )
    def test_invalid_values_rejected(self, monkeypatch, name, value):
        monkeypatch.setattr(config, name, value)

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_configuration()
        assert exc_info.value.error_code == "CONFIG_001"

    def test_inverted_threshold_range(self, monkeypatch):
        monkeypatch.setattr(config, "THRESHOLD_MIN", 95.0)
        monkeypatch.setattr(config, "THRESHOLD_MAX", 60.0)

        with pytest.raises(ConfigurationError):
            config.validate_configuration()

    def test_all_errors_reported_together(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_WORKERS", 0)
        monkeypatch.setattr(config, "EMBEDDING_BLEND", 2.0)

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_configuration()
        assert exc_info.value.context["errors"] == 2


def test_env_override_parsing(monkeypatch):
    monkeypatch.setenv("IDVERIFY_TEST_FLOAT", "0.25")
    monkeypatch.setenv("IDVERIFY_TEST_BAD", "lots")

    assert config._env_float("IDVERIFY_TEST_FLOAT", 1.0) == 0.25
    assert config._env_float("IDVERIFY_TEST_UNSET", 1.0) == 1.0
    with pytest.raises(ConfigurationError) as exc_info:
        config._env_int("IDVERIFY_TEST_BAD", 3)
    assert exc_info.value.context["config_key"] == "IDVERIFY_TEST_BAD"


def test_config_summary_reflects_settings():
    summary = config.get_config_summary()

    assert summary["consensus"]["weights"] == config.ENSEMBLE_WEIGHTS
    assert summary["scorer_pool"]["timeout_seconds"] == config.SCORER_TIMEOUT_SECONDS
    assert summary["storage"]["audit_store"] == str(config.AUDIT_STORE_PATH)


def test_consensus_settings_follow_config(monkeypatch):
    monkeypatch.setattr(config, "BASELINE_THRESHOLD", 72.5)
    assert ConsensusSettings.from_config().baseline_threshold == 72.5
