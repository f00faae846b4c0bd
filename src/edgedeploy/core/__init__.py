"""Core utilities and shared components for edgedeploy."""

from edgedeploy.core.exceptions import (
    ConfigError,
    CorruptState,
    DeploymentError,
    EdgeDeployError,
    LockTimeout,
    StateError,
)
from edgedeploy.core.output import OutputFormatter

__all__ = [
    "EdgeDeployError",
    "ConfigError",
    "StateError",
    "CorruptState",
    "LockTimeout",
    "DeploymentError",
    "OutputFormatter",
]
