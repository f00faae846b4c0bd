"""Phase execution result types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from edgedeploy.state.models import CapabilityResult


class TargetPhaseStatus(str, Enum):
    """Outcome of one phase for one target."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class TargetPhaseResult:
    """Result of one phase for one target."""

    target: str
    phase: str
    status: TargetPhaseStatus
    results: list[CapabilityResult] = field(default_factory=list)
    critical_failure: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (TargetPhaseStatus.COMPLETED, TargetPhaseStatus.SKIPPED)

    @property
    def failed_results(self) -> list[CapabilityResult]:
        return [r for r in self.results if not r.succeeded]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "phase": self.phase,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "critical_failure": self.critical_failure,
            "error": self.error,
        }


@dataclass
class PhaseResult:
    """Aggregated result of one phase across targets."""

    phase: str
    targets: dict[str, TargetPhaseResult] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def completed_targets(self) -> list[str]:
        return [t for t, r in self.targets.items() if r.status == TargetPhaseStatus.COMPLETED]

    @property
    def failed_targets(self) -> list[str]:
        return [t for t, r in self.targets.items() if r.status == TargetPhaseStatus.FAILED]

    @property
    def critical_targets(self) -> list[str]:
        """Targets that need a target-scoped rollback."""
        return [t for t, r in self.targets.items() if r.critical_failure]

    @property
    def all_succeeded(self) -> bool:
        return not self.cancelled and all(r.succeeded for r in self.targets.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase": self.phase,
            "targets": {t: r.to_dict() for t, r in self.targets.items()},
            "cancelled": self.cancelled,
            "completed": self.completed_targets,
            "failed": self.failed_targets,
        }
