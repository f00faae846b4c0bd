"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml

from edgedeploy.config import (
    CapabilityConfig,
    ConfigLoader,
    EdgeDeployConfig,
    ExecutionConfig,
    GlobalConfig,
    LockConfig,
    RetryConfig,
    StateConfig,
    get_default_config,
)
from edgedeploy.core.exceptions import ConfigError
from edgedeploy.core.logging import LogLevel
from edgedeploy.core.output import OutputFormat


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_values(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 30.0

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(base_delay=-1)

    def test_shrinking_multiplier_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(multiplier=0.5)


class TestLockConfig:
    """Tests for LockConfig."""

    def test_default_values(self):
        config = LockConfig()
        assert config.ttl == 60.0
        assert config.wait_timeout == 5.0

    @pytest.mark.parametrize("field", ["ttl", "poll_interval"])
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValueError):
            LockConfig(**{field: 0})


class TestStateConfig:
    """Tests for StateConfig."""

    def test_default_state_dir(self):
        assert StateConfig().get_state_dir() == Path.home() / ".edgedeploy" / "state"

    def test_custom_state_dir(self):
        assert StateConfig(state_dir="~/deploys").get_state_dir() == Path.home() / "deploys"

    def test_audit_dir(self):
        assert StateConfig().get_audit_dir() is None
        assert StateConfig(audit_dir="/var/log/edge").get_audit_dir() == Path("/var/log/edge")

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            StateConfig(backend="s3")


class TestCapabilityConfig:
    """Tests for CapabilityConfig."""

    def test_command_requires_command(self):
        with pytest.raises(ValueError):
            CapabilityConfig(type="command")

    def test_http_requires_url(self):
        with pytest.raises(ValueError):
            CapabilityConfig(type="http")

    def test_audit_needs_nothing(self):
        assert CapabilityConfig(type="audit").critical is False


class TestGlobalConfig:
    """Tests for GlobalConfig."""

    def test_default_values(self):
        config = GlobalConfig()
        assert config.output_format == OutputFormat.TABLE
        assert config.color == "auto"
        assert config.verbosity == LogLevel.INFO

    def test_invalid_color(self):
        with pytest.raises(ValueError):
            GlobalConfig(color="sometimes")


class TestEdgeDeployConfig:
    """Tests for the main configuration model."""

    def test_defaults(self):
        config = get_default_config()
        assert config.execution.max_parallel == 4
        assert config.lock.wait_timeout == 5.0
        assert config.state.backend == "filesystem"
        assert config.capabilities == {}

    def test_global_alias(self):
        config = EdgeDeployConfig(**{"global": {"output_format": "json"}})
        assert config.global_settings.output_format == OutputFormat.JSON

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EDGEDEPLOY_RETRY__MAX_ATTEMPTS", "7")
        monkeypatch.setenv("EDGEDEPLOY_EXECUTION__MAX_PARALLEL", "2")
        config = EdgeDeployConfig()
        assert config.retry.max_attempts == 7
        assert config.execution.max_parallel == 2

    def test_invalid_parallelism(self):
        with pytest.raises(ValueError):
            ExecutionConfig(max_parallel=0)


class TestConfigLoader:
    """Tests for ConfigLoader."""

    def test_no_files(self, tmp_path):
        config = ConfigLoader(user_config_path=tmp_path / "missing.yaml").load()
        assert config.retry.max_attempts == 3

    def test_explicit_file_overrides_user_file(self, tmp_path):
        user = tmp_path / "user.yaml"
        user.write_text(yaml.safe_dump({
            "retry": {"max_attempts": 5, "base_delay": 2.0},
            "lock": {"ttl": 120},
        }))
        explicit = tmp_path / "deploy.yaml"
        explicit.write_text(yaml.safe_dump({
            "retry": {"max_attempts": 9},
            "capabilities": {
                "deploy_artifact": {"command": "wrangler deploy --name {{ target }}", "critical": True},
                "health_check": {"type": "http", "url": "https://{{ target }}/health"},
            },
            "scopes": {"single": {"phases": {"execute": ["health_check"]}}},
        }))

        config = ConfigLoader(user_config_path=user).load(explicit)

        assert config.retry.max_attempts == 9
        assert config.retry.base_delay == 2.0
        assert config.lock.ttl == 120
        assert config.capabilities["deploy_artifact"].critical
        assert config.capabilities["health_check"].type == "http"
        assert config.scopes["single"].phases == {"execute": ["health_check"]}

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigLoader(user_config_path=tmp_path / "missing.yaml").load(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("retry: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            ConfigLoader(user_config_path=tmp_path / "missing.yaml").load(bad)

    def test_non_mapping(self, tmp_path):
        bad = tmp_path / "list.yaml"
        bad.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigLoader(user_config_path=tmp_path / "missing.yaml").load(bad)

    def test_invalid_values(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.safe_dump({"capabilities": {"deploy": {"type": "http"}}}))
        with pytest.raises(ConfigError, match="Invalid configuration"):
            ConfigLoader(user_config_path=tmp_path / "missing.yaml").load(bad)
