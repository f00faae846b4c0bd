"""Deployment orchestration: phases, capabilities, rollback and recovery."""

from edgedeploy.orchestration.capabilities import (
    Capability,
    CapabilityContext,
    CapabilityRegistry,
    FunctionCapability,
)
from edgedeploy.orchestration.executor import PhaseExecutor
from edgedeploy.orchestration.orchestrator import Orchestrator, terminal_status
from edgedeploy.orchestration.recovery import Diagnosis, DiagnosisKind, RecoveryManager
from edgedeploy.orchestration.rollback import RollbackManager, RollbackOutcome, RollbackResult
from edgedeploy.orchestration.scopes import ScopeProfile, get_profile
from edgedeploy.orchestration.service import DeploymentHandle, DeploymentService

__all__ = [
    "Capability",
    "CapabilityContext",
    "CapabilityRegistry",
    "DeploymentHandle",
    "DeploymentService",
    "Diagnosis",
    "DiagnosisKind",
    "FunctionCapability",
    "Orchestrator",
    "PhaseExecutor",
    "RecoveryManager",
    "RollbackManager",
    "RollbackOutcome",
    "RollbackResult",
    "ScopeProfile",
    "get_profile",
    "terminal_status",
]
