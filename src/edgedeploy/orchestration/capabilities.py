"""Capability contract and registry.

A capability is a named, idempotent unit of deployment work run against one
target. ``execute`` may be retried, so it must re-check the target before
acting. ``compensate`` undoes a successful ``execute`` during rollback.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from edgedeploy.core.exceptions import UnknownCapability


@dataclass
class CapabilityContext:
    """Everything a capability may read about the deployment it runs in."""

    deployment_id: str
    phase: str
    target: str
    scope: str
    config: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    timeout: float | None = None

    def template_vars(self) -> dict[str, Any]:
        """Variables available to templated commands."""
        return {
            "deployment_id": self.deployment_id,
            "phase": self.phase,
            "target": self.target,
            "scope": self.scope,
            "attempt": self.attempt,
            "config": self.config,
            "outputs": self.outputs,
        }


class Capability(ABC):
    """Base class for capabilities."""

    name: str = ""
    critical: bool = False
    timeout: float | None = None

    @abstractmethod
    def execute(self, target: str, context: CapabilityContext) -> Any:
        """Apply the capability to a target.

        Returns:
            JSON-safe output recorded on the target

        Raises:
            CapabilityRetryableFailure: On transient failure
            CapabilityFatalFailure: On permanent failure
        """

    def compensate(self, target: str, context: CapabilityContext) -> None:
        """Undo a successful ``execute``. No-op unless overridden."""

    @property
    def compensable(self) -> bool:
        return type(self).compensate is not Capability.compensate

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, critical={self.critical})"


class FunctionCapability(Capability):
    """Capability backed by plain callables."""

    def __init__(
        self,
        name: str,
        execute: Callable[[str, CapabilityContext], Any],
        compensate: Callable[[str, CapabilityContext], None] | None = None,
        critical: bool = False,
        timeout: float | None = None,
    ):
        self.name = name
        self.critical = critical
        self.timeout = timeout
        self._execute = execute
        self._compensate = compensate

    def execute(self, target: str, context: CapabilityContext) -> Any:
        return self._execute(target, context)

    def compensate(self, target: str, context: CapabilityContext) -> None:
        if self._compensate is not None:
            self._compensate(target, context)

    @property
    def compensable(self) -> bool:
        return self._compensate is not None


class CapabilityRegistry:
    """Named capabilities available to scope tables."""

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability, replace: bool = False) -> Capability:
        """Register a capability under its name."""
        if not capability.name:
            raise ValueError("Capability must have a name")
        if capability.name in self._capabilities and not replace:
            raise ValueError(f"Capability already registered: {capability.name}")
        self._capabilities[capability.name] = capability
        return capability

    def capability(
        self,
        name: str,
        critical: bool = False,
        timeout: float | None = None,
        compensate: Callable[[str, CapabilityContext], None] | None = None,
    ) -> Callable[[Callable[[str, CapabilityContext], Any]], Callable[[str, CapabilityContext], Any]]:
        """Decorator registering a function as a capability."""

        def decorator(func: Callable[[str, CapabilityContext], Any]) -> Callable[[str, CapabilityContext], Any]:
            self.register(
                FunctionCapability(
                    name,
                    execute=func,
                    compensate=compensate,
                    critical=critical,
                    timeout=timeout,
                )
            )
            return func

        return decorator

    def get(self, name: str) -> Capability:
        try:
            return self._capabilities[name]
        except KeyError:
            raise UnknownCapability(f"Unknown capability: {name}", capability=name)

    def resolve(self, names: Iterable[str]) -> list[Capability]:
        """Resolve names in order, failing on the first batch of unknown names."""
        names = list(names)
        missing = [n for n in names if n not in self._capabilities]
        if missing:
            raise UnknownCapability(
                f"Unknown capabilities: {', '.join(missing)}",
                capability=missing[0],
                details={"missing": missing},
            )
        return [self._capabilities[n] for n in names]

    def names(self) -> list[str]:
        return sorted(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
