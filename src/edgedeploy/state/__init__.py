"""Deployment state persistence, locking and schema versioning."""

from edgedeploy.state.backends import FileSystemBackend, InMemoryBackend, StorageBackend
from edgedeploy.state.models import (
    CapabilityOutcome,
    CapabilityResult,
    Checkpoint,
    DeploymentResult,
    DeploymentScope,
    DeploymentState,
    DeploymentStatus,
    LockInfo,
    Phase,
    RecoveryRecord,
    RollbackAction,
    RollbackActionStatus,
    TargetState,
    TargetStatus,
)
from edgedeploy.state.store import StateStore
from edgedeploy.state.versioning import StateVersioning, phases_for, versioning

__all__ = [
    "CapabilityOutcome",
    "CapabilityResult",
    "Checkpoint",
    "DeploymentResult",
    "DeploymentScope",
    "DeploymentState",
    "DeploymentStatus",
    "FileSystemBackend",
    "InMemoryBackend",
    "LockInfo",
    "Phase",
    "RecoveryRecord",
    "RollbackAction",
    "RollbackActionStatus",
    "StateStore",
    "StateVersioning",
    "StorageBackend",
    "TargetState",
    "TargetStatus",
    "phases_for",
    "versioning",
]
