"""Configuration management for edgedeploy using Pydantic."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from edgedeploy.core.exceptions import ConfigError
from edgedeploy.core.logging import LogLevel
from edgedeploy.core.output import OutputFormat


class RetryConfig(BaseModel):
    """Capability retry and backoff configuration."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the computed delay

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("base_delay", "max_delay", "jitter")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays and jitter must be non-negative")
        return v

    @field_validator("multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("multiplier must be >= 1 so delays never shrink")
        return v


class CircuitBreakerConfig(BaseModel):
    """Per (capability, target) circuit breaker configuration."""

    failure_threshold: int = 5
    cooldown: float = 60.0  # seconds
    half_open_successes: int = 1


class LockConfig(BaseModel):
    """Advisory deployment lock configuration."""

    wait_timeout: float = 5.0  # bounded wait for acquisition
    ttl: float = 60.0  # lease; renewed every ttl/3 while a run holds it
    poll_interval: float = 0.05

    @field_validator("ttl", "poll_interval")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class StateConfig(BaseModel):
    """State persistence configuration."""

    backend: Literal["filesystem", "memory"] = "filesystem"
    state_dir: str | None = None
    audit_dir: str | None = None
    archive_after_days: int = 30

    def get_state_dir(self) -> Path:
        """Get state directory, defaulting to ~/.edgedeploy/state."""
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return Path.home() / ".edgedeploy" / "state"

    def get_audit_dir(self) -> Path | None:
        """Get audit log directory if configured."""
        if self.audit_dir:
            return Path(self.audit_dir).expanduser()
        return None


class ExecutionConfig(BaseModel):
    """Phase execution configuration."""

    max_parallel: int = 4
    capability_timeout: float = 300.0  # seconds, per capability call
    max_workers: int = 4  # concurrent deployments started via the service

    @field_validator("max_parallel", "max_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class CapabilityConfig(BaseModel):
    """Declarative capability definition."""

    type: Literal["command", "http", "audit"] = "command"
    command: str | None = None
    compensate: str | None = None
    url: str | None = None
    expected_status: int = 200
    critical: bool = False
    timeout: float | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_type_fields(self) -> "CapabilityConfig":
        if self.type == "command" and not self.command:
            raise ValueError("command capability requires 'command'")
        if self.type == "http" and not self.url:
            raise ValueError("http capability requires 'url'")
        return self


class ScopeConfig(BaseModel):
    """Override of a scope's phase → capability table."""

    phases: dict[str, list[str]] = Field(default_factory=dict)
    parallel: bool | None = None
    max_parallel: int | None = None


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    log_format: Literal["text", "json"] = "text"

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class EdgeDeployConfig(BaseSettings):
    """Main configuration model.

    Values not given explicitly are read from ``EDGEDEPLOY_*`` environment
    variables, using ``__`` for nesting (``EDGEDEPLOY_RETRY__MAX_ATTEMPTS=5``).
    """

    model_config = SettingsConfigDict(
        env_prefix="EDGEDEPLOY_",
        env_nested_delimiter="__",
        populate_by_name=True,
        extra="ignore",
    )

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    capabilities: dict[str, CapabilityConfig] = Field(default_factory=dict)
    scopes: dict[str, ScopeConfig] = Field(default_factory=dict)


class ConfigLoader:
    """Loads and merges configuration from the user file and an explicit file."""

    USER_CONFIG_PATH = Path.home() / ".edgedeploy" / "config.yaml"

    def __init__(self, user_config_path: Path | None = None):
        self._user_config_path = user_config_path or self.USER_CONFIG_PATH
        self._config: EdgeDeployConfig | None = None

    def load(self, config_file: str | Path | None = None) -> EdgeDeployConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. User config (~/.edgedeploy/config.yaml)
        3. EDGEDEPLOY_* environment variables

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        if self._user_config_path.exists():
            configs.append(self._load_yaml_file(self._user_config_path))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged = self._merge_configs(configs)

        try:
            self._config = EdgeDeployConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


def load_config(config_file: str | Path | None = None) -> EdgeDeployConfig:
    """Load edgedeploy configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return ConfigLoader().load(config_file)


def get_default_config() -> EdgeDeployConfig:
    """Get default configuration without loading from files."""
    return EdgeDeployConfig()
