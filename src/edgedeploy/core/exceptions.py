"""Custom exceptions for edgedeploy."""

from typing import Any


class EdgeDeployError(Exception):
    """Base exception for all edgedeploy errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(EdgeDeployError):
    """Configuration-related errors."""

    pass


class StateError(EdgeDeployError):
    """Persisted state errors."""

    def __init__(
        self,
        message: str,
        deployment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.deployment_id = deployment_id


class StateNotFound(StateError):
    """No state has been persisted for the deployment."""

    pass


class CorruptState(StateError):
    """Persisted payload failed checksum or decoding verification."""

    pass


class UnsupportedVersion(StateError):
    """Persisted schema version has no migration path."""

    def __init__(
        self,
        message: str,
        version: Any = None,
        deployment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, deployment_id=deployment_id, details=details)
        self.version = version


class LockTimeout(EdgeDeployError):
    """Deployment lock could not be acquired in time. Retryable by the caller."""

    def __init__(
        self,
        message: str,
        deployment_id: str | None = None,
        holder: str | None = None,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.deployment_id = deployment_id
        self.holder = holder
        self.timeout_seconds = timeout_seconds


class CapabilityError(EdgeDeployError):
    """Capability invocation errors."""

    def __init__(
        self,
        message: str,
        capability: str | None = None,
        target: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.capability = capability
        self.target = target


class CapabilityRetryableFailure(CapabilityError):
    """Transient capability failure, retried with backoff."""

    pass


class CapabilityFatalFailure(CapabilityError):
    """Permanent capability failure, never retried."""

    pass


class CircuitOpen(CapabilityError):
    """Circuit breaker is open for a capability/target pair; no attempt made."""

    def __init__(
        self,
        message: str,
        capability: str | None = None,
        target: str | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, capability=capability, target=target, details=details)
        self.retry_after = retry_after


class UnknownCapability(CapabilityError):
    """A scope table references a capability that is not registered."""

    pass


class RollbackPartialFailure(EdgeDeployError):
    """One or more compensations failed during rollback."""

    def __init__(
        self,
        message: str,
        failed_actions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.failed_actions = failed_actions or []


class DeploymentError(EdgeDeployError):
    """Deployment orchestration errors."""

    def __init__(
        self,
        message: str,
        deployment_id: str | None = None,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.deployment_id = deployment_id
        self.phase = phase


class DeploymentCancelled(DeploymentError):
    """Deployment was cancelled before or during execution."""

    pass


class RecoveryError(EdgeDeployError):
    """Recovery could not be performed."""

    def __init__(
        self,
        message: str,
        deployment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.deployment_id = deployment_id
