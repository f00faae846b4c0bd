"""Pytest fixtures for edgedeploy tests."""

import os
import random
import threading
from collections.abc import Callable, Iterable
from typing import Any, Generator

import pytest
from click.testing import CliRunner

from edgedeploy.config import (
    CircuitBreakerConfig,
    EdgeDeployConfig,
    ExecutionConfig,
    LockConfig,
    RetryConfig,
    StateConfig,
)
from edgedeploy.core.context import EdgeDeployContext
from edgedeploy.core.exceptions import CapabilityFatalFailure, CapabilityRetryableFailure
from edgedeploy.core.output import OutputFormat
from edgedeploy.orchestration.audit import DeploymentAuditLogger
from edgedeploy.orchestration.capabilities import Capability, CapabilityContext, CapabilityRegistry
from edgedeploy.orchestration.orchestrator import Orchestrator
from edgedeploy.orchestration.service import DeploymentService
from edgedeploy.state.backends import FileSystemBackend, InMemoryBackend
from edgedeploy.state.store import StateStore

CAPABILITY_NAMES = (
    "validate_config",
    "compliance_check",
    "generate_secrets",
    "coordinate_secrets",
    "provision_database",
    "distribute_secrets",
    "deploy_artifact",
    "health_check",
    "audit_log",
)


class CallLog:
    """Thread-safe record of capability executions and compensations."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self._mutex = threading.Lock()

    def add(self, kind: str, capability: str, target: str) -> None:
        with self._mutex:
            self.calls.append((kind, capability, target))

    def executed(self, target: str | None = None) -> list[str]:
        return [c for k, c, t in self.calls if k == "execute" and (target is None or t == target)]

    def compensated(self, target: str | None = None) -> list[tuple[str, str]]:
        return [(c, t) for k, c, t in self.calls if k == "compensate" and (target is None or t == target)]

    def count(self, capability: str, target: str | None = None) -> int:
        return self.executed(target).count(capability)


class ScriptedCapability(Capability):
    """Capability whose failures are scripted per target."""

    def __init__(
        self,
        name: str,
        calls: CallLog,
        critical: bool = False,
        compensable: bool = True,
        fail_times: dict[str, int] | None = None,
        always_fail: Iterable[str] = (),
        fatal: bool = False,
        compensate_fails: Iterable[str] = (),
        on_execute: Callable[[str, CapabilityContext], None] | None = None,
    ):
        self.name = name
        self.critical = critical
        self.calls = calls
        self._compensable = compensable
        self._fail_times = dict(fail_times or {})
        self._always_fail = set(always_fail)
        self._fatal = fatal
        self._compensate_fails = set(compensate_fails)
        self._on_execute = on_execute
        self._attempts: dict[str, int] = {}
        self._mutex = threading.Lock()

    @property
    def compensable(self) -> bool:
        return self._compensable

    def execute(self, target: str, context: CapabilityContext) -> dict[str, Any]:
        self.calls.add("execute", self.name, target)
        with self._mutex:
            self._attempts[target] = self._attempts.get(target, 0) + 1
            attempt = self._attempts[target]

        if self._on_execute:
            self._on_execute(target, context)

        if target in self._always_fail:
            error = CapabilityFatalFailure if self._fatal else CapabilityRetryableFailure
            raise error(f"{self.name} broken on {target}", capability=self.name, target=target)
        if attempt <= self._fail_times.get(target, 0):
            raise CapabilityRetryableFailure(f"{self.name} flaked on {target}", capability=self.name, target=target)
        return {"capability": self.name, "target": target, "attempt": context.attempt}

    def compensate(self, target: str, context: CapabilityContext) -> None:
        self.calls.add("compensate", self.name, target)
        if target in self._compensate_fails:
            raise RuntimeError(f"cannot undo {self.name} on {target}")


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Remove EDGEDEPLOY_* variables for the duration of each test."""
    for key in list(os.environ):
        if key.startswith("EDGEDEPLOY_"):
            monkeypatch.delenv(key)
    yield


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def fast_config() -> EdgeDeployConfig:
    """Configuration with short lock waits and an in-memory backend."""
    return EdgeDeployConfig(
        retry=RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.1, jitter=0.1),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=10, cooldown=60.0),
        lock=LockConfig(wait_timeout=0.2, ttl=30.0, poll_interval=0.01),
        state=StateConfig(backend="memory"),
        execution=ExecutionConfig(max_parallel=4, max_workers=2),
    )


@pytest.fixture
def store(fast_config: EdgeDeployConfig) -> StateStore:
    """State store on an in-memory backend."""
    return StateStore(InMemoryBackend(), lock_config=fast_config.lock)


@pytest.fixture
def fs_store(tmp_path, fast_config: EdgeDeployConfig) -> StateStore:
    """State store on a filesystem backend in a temp directory."""
    return StateStore(FileSystemBackend(tmp_path / "state"), lock_config=fast_config.lock)


@pytest.fixture
def calls() -> CallLog:
    return CallLog()


@pytest.fixture
def scripted(calls: CallLog) -> Callable[..., ScriptedCapability]:
    """Factory for scripted capabilities sharing the test's call log."""

    def _make(name: str, **kwargs: Any) -> ScriptedCapability:
        return ScriptedCapability(name, calls, **kwargs)

    return _make


@pytest.fixture
def make_registry(scripted: Callable[..., ScriptedCapability]) -> Callable[..., CapabilityRegistry]:
    """Factory for a registry holding every default capability name.

    ``deploy_artifact`` is critical; keyword arguments replace individual
    capabilities by name.
    """

    def _make(**overrides: Capability) -> CapabilityRegistry:
        registry = CapabilityRegistry()
        for name in CAPABILITY_NAMES:
            capability = overrides.get(name) or scripted(name, critical=name == "deploy_artifact")
            registry.register(capability)
        return registry

    return _make


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_orchestrator(
    store: StateStore,
    fast_config: EdgeDeployConfig,
    make_registry: Callable[..., CapabilityRegistry],
    sleeper: SleepRecorder,
) -> Callable[..., Orchestrator]:
    """Factory for orchestrators with no real backoff sleeping."""

    def _make(
        registry: CapabilityRegistry | None = None,
        state_store: StateStore | None = None,
        config: EdgeDeployConfig | None = None,
        audit: DeploymentAuditLogger | None = None,
    ) -> Orchestrator:
        return Orchestrator(
            state_store or store,
            registry or make_registry(),
            config=config or fast_config,
            audit=audit,
            sleep=sleeper,
            rng=random.Random(7),
        )

    return _make


@pytest.fixture
def audit_logger(tmp_path) -> DeploymentAuditLogger:
    return DeploymentAuditLogger(tmp_path / "audit")


@pytest.fixture
def make_service(
    store: StateStore,
    fast_config: EdgeDeployConfig,
    make_registry: Callable[..., CapabilityRegistry],
    make_orchestrator: Callable[..., Orchestrator],
    audit_logger: DeploymentAuditLogger,
) -> Generator[Callable[..., DeploymentService], None, None]:
    """Factory for deployment services; pools are shut down after the test."""
    services: list[DeploymentService] = []

    def _make(registry: CapabilityRegistry | None = None) -> DeploymentService:
        registry = registry or make_registry()
        service = DeploymentService(
            fast_config,
            store=store,
            registry=registry,
            audit=audit_logger,
            orchestrator=make_orchestrator(registry, audit=audit_logger),
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        service.shutdown()


@pytest.fixture
def make_context(fast_config: EdgeDeployConfig) -> Callable[..., EdgeDeployContext]:
    """Factory for CLI contexts bound to a given service."""

    def _make(
        service: DeploymentService,
        output_format: OutputFormat = OutputFormat.JSON,
        quiet: bool = True,
    ) -> EdgeDeployContext:
        return EdgeDeployContext(
            config=fast_config,
            output_format=output_format,
            quiet=quiet,
            color=False,
            service=service,
        )

    return _make
