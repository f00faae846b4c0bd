"""Capabilities configurable from YAML.

``command`` capabilities run a Jinja2-templated shell command and, when
configured, a compensating command. ``http`` capabilities probe a URL with
httpx. ``audit`` capabilities write an audit entry. Templates see
``deployment_id``, ``phase``, ``target``, ``scope``, ``attempt``, ``config``
and ``outputs``.
"""

import os
import shlex
import subprocess
from typing import Any

import httpx
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from edgedeploy.config import CapabilityConfig, EdgeDeployConfig
from edgedeploy.core.exceptions import CapabilityFatalFailure, CapabilityRetryableFailure
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.audit import DeploymentAuditLogger
from edgedeploy.orchestration.capabilities import Capability, CapabilityContext, CapabilityRegistry

logger = StructuredLogger(__name__)

DEFAULT_TIMEOUT = 300.0
MAX_OUTPUT_CHARS = 4000

_jinja_env = Environment(loader=BaseLoader(), undefined=StrictUndefined)


def render_template(template: str, context: CapabilityContext, name: str) -> str:
    """Render a capability template against the context."""
    try:
        return _jinja_env.from_string(template).render(**context.template_vars())
    except TemplateError as e:
        raise CapabilityFatalFailure(f"Template error: {e}", capability=name, target=context.target)


class CommandCapability(Capability):
    """Run a shell command per target."""

    def __init__(
        self,
        name: str,
        command: str,
        compensate_command: str | None = None,
        critical: bool = False,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ):
        self.name = name
        self.command = command
        self.compensate_command = compensate_command
        self.critical = critical
        self.timeout = timeout
        self.env = env or {}

    @property
    def compensable(self) -> bool:
        return self.compensate_command is not None

    def execute(self, target: str, context: CapabilityContext) -> dict[str, Any]:
        return self._run(self.command, target, context)

    def compensate(self, target: str, context: CapabilityContext) -> None:
        if self.compensate_command:
            self._run(self.compensate_command, target, context)

    def _run(self, template: str, target: str, context: CapabilityContext) -> dict[str, Any]:
        command = render_template(template, context, self.name)
        cmd_parts = shlex.split(command)
        timeout = context.timeout or self.timeout or DEFAULT_TIMEOUT
        logger.debug("Running command", capability=self.name, target=target, command=command)

        try:
            result = subprocess.run(
                cmd_parts,
                capture_output=True,
                text=True,
                timeout=timeout,
                env={**os.environ, **self.env},
            )
        except subprocess.TimeoutExpired:
            raise CapabilityRetryableFailure(
                f"Command timed out after {timeout}s",
                capability=self.name,
                target=target,
            )
        except OSError as e:
            raise CapabilityFatalFailure(
                f"Command could not be started: {e}",
                capability=self.name,
                target=target,
            )

        if result.returncode != 0:
            raise CapabilityRetryableFailure(
                f"Command exited with {result.returncode}: {result.stderr.strip()[-500:]}",
                capability=self.name,
                target=target,
                details={"returncode": result.returncode},
            )

        return {
            "returncode": result.returncode,
            "stdout": result.stdout[-MAX_OUTPUT_CHARS:],
        }


class HttpHealthCheck(Capability):
    """Probe a target URL and require an expected status code."""

    def __init__(
        self,
        name: str,
        url: str,
        expected_status: int = 200,
        critical: bool = False,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.name = name
        self.url = url
        self.expected_status = expected_status
        self.critical = critical
        self.timeout = timeout
        self._transport = transport

    def execute(self, target: str, context: CapabilityContext) -> dict[str, Any]:
        url = render_template(self.url, context, self.name)
        timeout = context.timeout or self.timeout or 10.0

        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            raise CapabilityRetryableFailure(
                f"Health check request failed: {e}",
                capability=self.name,
                target=target,
            )

        if response.status_code != self.expected_status:
            raise CapabilityRetryableFailure(
                f"Health check returned {response.status_code}, expected {self.expected_status}",
                capability=self.name,
                target=target,
                details={"url": url, "status_code": response.status_code},
            )

        logger.debug("Health check passed", target=target, url=url)
        return {"url": url, "status_code": response.status_code}


class AuditLogCapability(Capability):
    """Record an audit entry for the target."""

    def __init__(self, name: str, audit: DeploymentAuditLogger, critical: bool = False):
        self.name = name
        self.audit = audit
        self.critical = critical

    def execute(self, target: str, context: CapabilityContext) -> dict[str, Any]:
        audit_id = self.audit.log_event(
            context.deployment_id,
            "capability",
            {
                "capability": self.name,
                "phase": context.phase,
                "target": target,
                "scope": context.scope,
                "outputs": sorted(context.outputs),
            },
        )
        return {"audit_id": audit_id}


def build_capability(
    name: str,
    config: CapabilityConfig,
    audit: DeploymentAuditLogger | None = None,
) -> Capability:
    """Create a capability from its configuration."""
    if config.type == "command":
        return CommandCapability(
            name,
            command=config.command,
            compensate_command=config.compensate,
            critical=config.critical,
            timeout=config.timeout,
            env=config.env,
        )
    if config.type == "http":
        return HttpHealthCheck(
            name,
            url=config.url,
            expected_status=config.expected_status,
            critical=config.critical,
            timeout=config.timeout,
        )
    return AuditLogCapability(name, audit or DeploymentAuditLogger(), critical=config.critical)


def build_registry(
    config: EdgeDeployConfig,
    audit: DeploymentAuditLogger | None = None,
) -> CapabilityRegistry:
    """Registry of every capability declared in configuration."""
    registry = CapabilityRegistry()
    for name, capability_config in config.capabilities.items():
        registry.register(build_capability(name, capability_config, audit))
    logger.debug("Built capability registry", capabilities=len(registry))
    return registry
