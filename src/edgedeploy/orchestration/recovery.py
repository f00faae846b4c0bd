"""Detection of and recovery from interrupted or corrupt deployments."""

from dataclasses import dataclass, field
from enum import Enum

from edgedeploy.core.exceptions import CorruptState, RecoveryError, StateNotFound, UnsupportedVersion
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.rollback import RollbackManager
from edgedeploy.state.models import DeploymentState, RecoveryRecord, TargetStatus
from edgedeploy.state.store import StateStore, default_holder

logger = StructuredLogger(__name__)


class DiagnosisKind(str, Enum):
    HEALTHY = "healthy"
    INTERRUPTED = "interrupted"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class Diagnosis:
    """What :meth:`RecoveryManager.detect` found for a deployment."""

    deployment_id: str
    kind: DiagnosisKind
    reason: str
    phase: str | None = None
    state: DeploymentState | None = field(default=None, compare=False, repr=False)

    @property
    def needs_recovery(self) -> bool:
        return self.kind != DiagnosisKind.HEALTHY


class RecoveryManager:
    """Resumes interrupted deployments from their last checkpoint.

    Every recovery appends one :class:`RecoveryRecord` to the state, created
    and saved while the deployment lock is held. A record names the run it
    recovers from, so recovering the same interruption twice returns the
    existing record instead of writing a duplicate.
    """

    def __init__(self, store: StateStore, rollback: RollbackManager):
        self.store = store
        self.rollback = rollback

    def detect(self, deployment_id: str) -> Diagnosis:
        """Classify a stored deployment.

        Raises:
            StateNotFound: If nothing is stored for the id
        """
        try:
            state = self.store.load(deployment_id)
        except (CorruptState, UnsupportedVersion) as e:
            return Diagnosis(deployment_id, DiagnosisKind.CORRUPT, reason=e.message)

        if state.is_terminal:
            return Diagnosis(
                deployment_id, DiagnosisKind.HEALTHY, reason=f"terminal: {state.status.value}",
                phase=state.phase, state=state,
            )
        if self.store.is_locked(deployment_id):
            return Diagnosis(
                deployment_id, DiagnosisKind.HEALTHY, reason="running", phase=state.phase, state=state,
            )

        reason = "interrupted mid-rollback" if self._rolling_back(state) else "interrupted mid-phase"
        return Diagnosis(
            deployment_id, DiagnosisKind.INTERRUPTED, reason=reason,
            phase=self.resume_phase(state), state=state,
        )

    def recover(self, deployment_id: str, holder: str | None = None) -> RecoveryRecord:
        """Prepare an interrupted or corrupt deployment for resumption.

        Under the deployment lock: restores the previous generation of a
        corrupt state, finishes any rollback left mid-unwind, rewinds
        ``phase`` to the first phase without a checkpoint and records the
        recovery.

        Raises:
            StateNotFound: If nothing is stored for the id
            CorruptState: If neither generation verifies
            RecoveryError: If the deployment is healthy
        """
        holder = holder or default_holder()
        with self.store.lock(deployment_id, holder=holder):
            restored = False
            try:
                state = self.store.load(deployment_id)
            except CorruptState as e:
                state = self._restore(deployment_id, e)
                restored = True

            if state.is_terminal and not restored:
                raise RecoveryError(
                    f"Deployment {deployment_id} is {state.status.value}; nothing to recover",
                    deployment_id=deployment_id,
                )

            if restored:
                issue = "corrupt state"
                action = "restored previous generation"
                if not state.is_terminal:
                    action += f", resuming at {self.resume_phase(state)}"
                record = self._append(state, issue, action, interrupted_run=state.run_id)
            else:
                record = self.prepare_resume(state, holder) or self._never_started(state)

            if not state.is_terminal:
                self.finish_rollbacks(state)
                state.phase = self.resume_phase(state)
            self.store.save(state)
            return record

    def _never_started(self, state: DeploymentState) -> RecoveryRecord:
        issue = "interrupted before first run"
        for record in state.recovery_history:
            if record.interrupted_run is None and record.detected_issue == issue:
                return record
        return self._append(state, issue, f"resuming at {self.resume_phase(state)}", interrupted_run=None)

    def prepare_resume(self, state: DeploymentState, holder: str) -> RecoveryRecord | None:
        """Record the interruption of a non-terminal state about to be resumed.

        Must be called with the deployment lock held by ``holder``. Returns
        None for a fresh state that was never interrupted.
        """
        interrupted = state.run_id
        if interrupted is None or interrupted == holder:
            return None

        for record in state.recovery_history:
            if record.interrupted_run == interrupted:
                return record

        resume_at = self.resume_phase(state)
        if self._rolling_back(state):
            issue = "interrupted mid-rollback"
            action = f"finishing rollback, resuming at {resume_at}"
        else:
            issue = f"interrupted during {state.phase}"
            action = f"resuming at {resume_at}"
        return self._append(state, issue, action, interrupted_run=interrupted)

    def history(self, deployment_id: str) -> list[RecoveryRecord]:
        """Recovery records of a deployment, oldest first."""
        state = self.store.load(deployment_id)
        return sorted(state.recovery_history, key=lambda r: r.sequence)

    @staticmethod
    def resume_phase(state: DeploymentState) -> str | None:
        remaining = state.remaining_phases()
        return remaining[0] if remaining else None

    @staticmethod
    def _rolling_back(state: DeploymentState) -> bool:
        return any(ts.status == TargetStatus.ROLLING_BACK for ts in state.target_states.values())

    def finish_rollbacks(self, state: DeploymentState) -> None:
        for target in state.targets:
            if state.target(target).status == TargetStatus.ROLLING_BACK:
                self.rollback.rollback(state, target=target, persist=self.store.save)

    def _restore(self, deployment_id: str, error: CorruptState) -> DeploymentState:
        try:
            state = self.store.restore_previous(deployment_id)
        except (CorruptState, StateNotFound):
            logger.error("No verifiable state generation", deployment_id=deployment_id)
            raise error
        return state

    def _append(
        self,
        state: DeploymentState,
        issue: str,
        action: str,
        interrupted_run: str | None,
    ) -> RecoveryRecord:
        sequence = max((r.sequence for r in state.recovery_history), default=0) + 1
        record = RecoveryRecord(
            recovery_id=f"{state.deployment_id}-r{sequence:04d}",
            sequence=sequence,
            deployment_id=state.deployment_id,
            from_phase=state.phase,
            detected_issue=issue,
            action_taken=action,
            interrupted_run=interrupted_run,
        )
        state.recovery_history.append(record)
        logger.warning(
            "Recovering deployment",
            deployment_id=state.deployment_id,
            recovery_id=record.recovery_id,
            issue=issue,
            action=action,
        )
        return record
