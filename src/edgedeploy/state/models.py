"""Deployment state data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from edgedeploy.core.exceptions import DeploymentError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class DeploymentStatus(str, Enum):
    """Deployment status."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not DeploymentStatus.RUNNING


class Phase(str, Enum):
    """Deployment phases of the current topology."""

    ASSESS = "assess"
    CONSTRUCT = "construct"
    ORCHESTRATE = "orchestrate"
    EXECUTE = "execute"


class DeploymentScope(str, Enum):
    """Deployment breadth."""

    SINGLE = "single"
    PORTFOLIO = "portfolio"
    ENTERPRISE = "enterprise"


class TargetStatus(str, Enum):
    """Per-target status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"

    @property
    def is_blocked(self) -> bool:
        """Target may not run further phases."""
        return self in (
            TargetStatus.FAILED,
            TargetStatus.ROLLING_BACK,
            TargetStatus.ROLLED_BACK,
            TargetStatus.PARTIALLY_ROLLED_BACK,
        )


class CapabilityOutcome(str, Enum):
    """Outcome of one capability invocation including its retries."""

    SUCCESS = "success"
    RETRIED = "retried"
    FAILED = "failed"


class RollbackActionStatus(str, Enum):
    """Compensation status of a registered rollback action."""

    PENDING = "pending"
    COMPENSATED = "compensated"
    FAILED = "failed"


@dataclass
class CapabilityResult:
    """Result of running one capability against one target."""

    capability: str
    target: str
    outcome: CapabilityOutcome
    attempts: int = 0
    last_error: str | None = None
    error_kind: str | None = None  # retryable, fatal, circuit_open, cancelled
    delays: list[float] = field(default_factory=list)
    critical: bool = False
    output: Any = None

    @property
    def succeeded(self) -> bool:
        return self.outcome != CapabilityOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "capability": self.capability,
            "target": self.target,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "error_kind": self.error_kind,
            "delays": list(self.delays),
            "critical": self.critical,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CapabilityResult":
        """Create from dictionary."""
        return cls(
            capability=data["capability"],
            target=data["target"],
            outcome=CapabilityOutcome(data["outcome"]),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            error_kind=data.get("error_kind"),
            delays=list(data.get("delays", [])),
            critical=data.get("critical", False),
            output=data.get("output"),
        )


@dataclass
class RollbackAction:
    """A compensating action registered after a side effect succeeded."""

    id: str
    sequence: int
    phase: str
    target: str
    capability: str
    registered_at: datetime = field(default_factory=utcnow)
    status: RollbackActionStatus = RollbackActionStatus.PENDING
    error: str | None = None
    finished_at: datetime | None = None

    @staticmethod
    def make_id(phase: str, target: str, capability: str) -> str:
        return f"{phase}:{target}:{capability}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "sequence": self.sequence,
            "phase": self.phase,
            "target": self.target,
            "capability": self.capability,
            "registered_at": _iso(self.registered_at),
            "status": self.status.value,
            "error": self.error,
            "finished_at": _iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackAction":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            sequence=data["sequence"],
            phase=data["phase"],
            target=data["target"],
            capability=data["capability"],
            registered_at=_parse(data["registered_at"]),
            status=RollbackActionStatus(data.get("status", "pending")),
            error=data.get("error"),
            finished_at=_parse(data.get("finished_at")),
        )


@dataclass
class RecoveryRecord:
    """Audit record of one recovery from an interruption or corruption."""

    recovery_id: str
    sequence: int
    deployment_id: str
    from_phase: str | None
    detected_issue: str
    action_taken: str
    interrupted_run: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "recovery_id": self.recovery_id,
            "sequence": self.sequence,
            "deployment_id": self.deployment_id,
            "from_phase": self.from_phase,
            "detected_issue": self.detected_issue,
            "action_taken": self.action_taken,
            "interrupted_run": self.interrupted_run,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryRecord":
        """Create from dictionary."""
        return cls(
            recovery_id=data["recovery_id"],
            sequence=data["sequence"],
            deployment_id=data["deployment_id"],
            from_phase=data.get("from_phase"),
            detected_issue=data["detected_issue"],
            action_taken=data["action_taken"],
            interrupted_run=data.get("interrupted_run"),
            timestamp=_parse(data["timestamp"]),
        )


@dataclass
class CheckpointRecord:
    """Entry in a state's chronological checkpoint log."""

    sequence: int
    phase: str | None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "phase": self.phase,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointRecord":
        return cls(
            sequence=data["sequence"],
            phase=data.get("phase"),
            created_at=_parse(data["created_at"]),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Immutable descriptor of a durably saved state snapshot."""

    deployment_id: str
    sequence: int
    phase: str | None
    saved_at: datetime
    checksum: str


@dataclass(frozen=True)
class LockInfo:
    """Advisory lock lease on a deployment."""

    deployment_id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "holder": self.holder,
            "acquired_at": _iso(self.acquired_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockInfo":
        return cls(
            deployment_id=data["deployment_id"],
            holder=data["holder"],
            acquired_at=_parse(data["acquired_at"]),
            expires_at=_parse(data["expires_at"]),
        )


@dataclass
class TargetState:
    """Progress of one target within a deployment."""

    target: str
    status: TargetStatus = TargetStatus.PENDING
    completed_phases: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    critical_failure: bool = False
    results: dict[str, list[CapabilityResult]] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def failed_result(self) -> CapabilityResult | None:
        """The first failed capability call of the failed phase, if any."""
        for result in self.results.get(self.failed_phase or "", []):
            if not result.succeeded:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "status": self.status.value,
            "completed_phases": list(self.completed_phases),
            "failed_phase": self.failed_phase,
            "error": self.error,
            "critical_failure": self.critical_failure,
            "results": {
                phase: [r.to_dict() for r in results]
                for phase, results in self.results.items()
            },
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetState":
        """Create from dictionary."""
        return cls(
            target=data["target"],
            status=TargetStatus(data.get("status", "pending")),
            completed_phases=list(data.get("completed_phases", [])),
            failed_phase=data.get("failed_phase"),
            error=data.get("error"),
            critical_failure=data.get("critical_failure", False),
            results={
                phase: [CapabilityResult.from_dict(r) for r in results]
                for phase, results in data.get("results", {}).items()
            },
            outputs=data.get("outputs", {}),
        )


@dataclass
class DeploymentState:
    """Persisted state of one deployment.

    ``phase`` is the phase currently executing, or the next phase to execute
    when resuming. Output values and ``config`` must be JSON-safe so that a
    save/load round trip yields an equal object.
    """

    deployment_id: str
    scope: DeploymentScope = DeploymentScope.SINGLE
    targets: list[str] = field(default_factory=list)
    phase: str | None = None
    status: DeploymentStatus = DeploymentStatus.RUNNING
    phases: list[str] = field(default_factory=list)
    topology_version: int = 1
    schema_version: int = 0
    target_states: dict[str, TargetState] = field(default_factory=dict)
    completed_phases: list[str] = field(default_factory=list)
    rollback_stack: list[RollbackAction] = field(default_factory=list)
    recovery_history: list[RecoveryRecord] = field(default_factory=list)
    checkpoints: list[CheckpointRecord] = field(default_factory=list)
    checkpoint_seq: int = 0
    run_id: str | None = None
    cancelled: bool = False
    config: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def target(self, name: str) -> TargetState:
        """Get the state of a target."""
        return self.target_states[name]

    def active_targets(self) -> list[str]:
        """Targets still allowed to run phases, in declaration order."""
        return [t for t in self.targets if not self.target_states[t].status.is_blocked]

    def remaining_phases(self) -> list[str]:
        """Phases not yet checkpointed, in topology order."""
        return [p for p in self.phases if p not in self.completed_phases]

    def next_rollback_sequence(self) -> int:
        return max((a.sequence for a in self.rollback_stack), default=0) + 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "deployment_id": self.deployment_id,
            "scope": self.scope.value,
            "targets": list(self.targets),
            "phase": self.phase,
            "status": self.status.value,
            "phases": list(self.phases),
            "topology_version": self.topology_version,
            "schema_version": self.schema_version,
            "target_states": {t: s.to_dict() for t, s in self.target_states.items()},
            "completed_phases": list(self.completed_phases),
            "rollback_stack": [a.to_dict() for a in self.rollback_stack],
            "recovery_history": [r.to_dict() for r in self.recovery_history],
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "checkpoint_seq": self.checkpoint_seq,
            "run_id": self.run_id,
            "cancelled": self.cancelled,
            "config": self.config,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentState":
        """Create from dictionary."""
        return cls(
            deployment_id=data["deployment_id"],
            scope=DeploymentScope(data.get("scope", "single")),
            targets=list(data.get("targets", [])),
            phase=data.get("phase"),
            status=DeploymentStatus(data.get("status", "running")),
            phases=list(data.get("phases", [])),
            topology_version=data.get("topology_version", 1),
            schema_version=data.get("schema_version", 0),
            target_states={
                t: TargetState.from_dict(s) for t, s in data.get("target_states", {}).items()
            },
            completed_phases=list(data.get("completed_phases", [])),
            rollback_stack=[RollbackAction.from_dict(a) for a in data.get("rollback_stack", [])],
            recovery_history=[
                RecoveryRecord.from_dict(r) for r in data.get("recovery_history", [])
            ],
            checkpoints=[CheckpointRecord.from_dict(c) for c in data.get("checkpoints", [])],
            checkpoint_seq=data.get("checkpoint_seq", 0),
            run_id=data.get("run_id"),
            cancelled=data.get("cancelled", False),
            config=data.get("config", {}),
            error=data.get("error"),
            created_at=_parse(data["created_at"]),
            updated_at=_parse(data["updated_at"]),
            completed_at=_parse(data.get("completed_at")),
        )


@dataclass(frozen=True)
class TargetStatusView:
    """Read-only per-target status."""

    target: str
    status: str
    completed_phases: tuple[str, ...]
    failed_phase: str | None
    error: str | None
    failed_capability: str | None = None
    attempts: int = 0

    @classmethod
    def from_target_state(cls, target_state: "TargetState") -> "TargetStatusView":
        failed = target_state.failed_result()
        return cls(
            target=target_state.target,
            status=target_state.status.value,
            completed_phases=tuple(target_state.completed_phases),
            failed_phase=target_state.failed_phase,
            error=target_state.error,
            failed_capability=failed.capability if failed else None,
            attempts=failed.attempts if failed else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "status": self.status,
            "completed_phases": list(self.completed_phases),
            "failed_phase": self.failed_phase,
            "error": self.error,
            "failed_capability": self.failed_capability,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class DeploymentResult:
    """Outcome of a deployment, derived entirely from its persisted state."""

    deployment_id: str
    scope: str
    status: DeploymentStatus
    phase: str | None
    completed_phases: tuple[str, ...]
    targets: tuple[TargetStatusView, ...]
    failed_rollback_actions: tuple[str, ...] = ()
    recoveries: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCESS

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def failures(self) -> list[dict[str, Any]]:
        """Phase, target, capability, attempts and last error of every failed target."""
        return [
            {
                "target": t.target,
                "phase": t.failed_phase,
                "capability": t.failed_capability,
                "attempts": t.attempts,
                "last_error": t.error,
            }
            for t in self.targets
            if t.failed_phase is not None
        ]

    def raise_for_status(self) -> "DeploymentResult":
        """Raise DeploymentError unless the deployment succeeded.

        Returns:
            The result itself, for chaining
        """
        if self.succeeded:
            return self

        failures = self.failures
        raise DeploymentError(
            f"Deployment {self.deployment_id} ended {self.status.value}",
            deployment_id=self.deployment_id,
            phase=failures[0]["phase"] if failures else self.phase,
            details={
                "status": self.status.value,
                "failures": failures,
                "failed_rollback_actions": list(self.failed_rollback_actions),
                "error": self.error,
            },
        )

    @classmethod
    def from_state(cls, state: DeploymentState) -> "DeploymentResult":
        return cls(
            deployment_id=state.deployment_id,
            scope=state.scope.value,
            status=state.status,
            phase=state.phase,
            completed_phases=tuple(state.completed_phases),
            targets=tuple(TargetStatusView.from_target_state(state.target_states[t]) for t in state.targets),
            failed_rollback_actions=tuple(
                a.id for a in state.rollback_stack if a.status == RollbackActionStatus.FAILED
            ),
            recoveries=len(state.recovery_history),
            error=state.error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "deployment_id": self.deployment_id,
            "scope": self.scope,
            "status": self.status.value,
            "phase": self.phase,
            "completed_phases": list(self.completed_phases),
            "targets": [t.to_dict() for t in self.targets],
            "failed_rollback_actions": list(self.failed_rollback_actions),
            "recoveries": self.recoveries,
            "error": self.error,
        }
