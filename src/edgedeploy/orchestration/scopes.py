"""Scope profiles: which capabilities run in which phase, and how wide.

A scope is a table, not a subclass. Every scope runs the same phase state
machine; profiles only differ in the capability names bound to each phase
and in whether targets run concurrently.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from edgedeploy.config import EdgeDeployConfig, ScopeConfig
from edgedeploy.core.exceptions import ConfigError
from edgedeploy.orchestration.capabilities import Capability, CapabilityRegistry
from edgedeploy.state.models import DeploymentScope, Phase
from edgedeploy.state.versioning import PHASE_TOPOLOGIES


@dataclass(frozen=True)
class ScopeProfile:
    """Phase → ordered capability names for one deployment scope."""

    scope: DeploymentScope
    phases: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    parallel: bool = False
    max_parallel: int | None = None
    max_targets: int | None = None

    def capabilities_for(self, phase: str) -> tuple[str, ...]:
        return tuple(self.phases.get(phase, ()))

    def capability_names(self) -> list[str]:
        names: list[str] = []
        for phase_names in self.phases.values():
            names.extend(n for n in phase_names if n not in names)
        return names

    def resolve(self, registry: CapabilityRegistry, phases: list[str]) -> dict[str, list[Capability]]:
        """Resolve every phase's names against a registry.

        Raises:
            UnknownCapability: If any bound name is not registered
        """
        registry.resolve(self.capability_names())
        return {phase: registry.resolve(self.capabilities_for(phase)) for phase in phases}

    def parallelism(self, default: int) -> int:
        if not self.parallel:
            return 1
        return self.max_parallel or default

    def with_overrides(self, override: ScopeConfig) -> "ScopeProfile":
        """Apply a configuration override, replacing only the phases it names."""
        known = set().union(*PHASE_TOPOLOGIES.values())
        unknown = [p for p in override.phases if p not in known]
        if unknown:
            raise ConfigError(
                f"Scope '{self.scope.value}' override names unknown phases: {', '.join(unknown)}",
                details={"unknown": unknown},
            )

        phases = dict(self.phases)
        phases.update({p: tuple(names) for p, names in override.phases.items()})
        return replace(
            self,
            phases=phases,
            parallel=self.parallel if override.parallel is None else override.parallel,
            max_parallel=override.max_parallel or self.max_parallel,
        )


SINGLE_PROFILE = ScopeProfile(
    scope=DeploymentScope.SINGLE,
    phases={
        Phase.ASSESS.value: ("validate_config",),
        Phase.CONSTRUCT.value: ("generate_secrets", "provision_database"),
        Phase.ORCHESTRATE.value: ("distribute_secrets", "deploy_artifact"),
        Phase.EXECUTE.value: ("health_check",),
    },
    parallel=False,
    max_targets=1,
)

PORTFOLIO_PROFILE = ScopeProfile(
    scope=DeploymentScope.PORTFOLIO,
    phases={
        **SINGLE_PROFILE.phases,
        Phase.CONSTRUCT.value: ("generate_secrets", "coordinate_secrets", "provision_database"),
    },
    parallel=True,
)

ENTERPRISE_PROFILE = ScopeProfile(
    scope=DeploymentScope.ENTERPRISE,
    phases={
        **PORTFOLIO_PROFILE.phases,
        Phase.ASSESS.value: ("validate_config", "compliance_check"),
        Phase.EXECUTE.value: ("health_check", "audit_log"),
    },
    parallel=True,
)

DEFAULT_PROFILES: dict[DeploymentScope, ScopeProfile] = {
    DeploymentScope.SINGLE: SINGLE_PROFILE,
    DeploymentScope.PORTFOLIO: PORTFOLIO_PROFILE,
    DeploymentScope.ENTERPRISE: ENTERPRISE_PROFILE,
}


def get_profile(scope: DeploymentScope | str, config: EdgeDeployConfig | None = None) -> ScopeProfile:
    """Profile for a scope with any configured overrides applied."""
    try:
        scope = DeploymentScope(scope)
    except ValueError:
        raise ConfigError(f"Unknown deployment scope: {scope}")

    profile = DEFAULT_PROFILES[scope]
    if config is not None and scope.value in config.scopes:
        profile = profile.with_overrides(config.scopes[scope.value])
    return profile
