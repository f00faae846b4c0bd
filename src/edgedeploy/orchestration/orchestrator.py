"""The deployment state machine.

``INIT → ASSESS → CONSTRUCT → ORCHESTRATE → EXECUTE → terminal``

One class serves every scope; a :class:`ScopeProfile` supplies the
capabilities bound to each phase and the target parallelism. The deployment
lock is held for the whole run and its lease renewed at phase boundaries,
between capability invocations and every third of the lease while a
capability is in flight. A phase starts only after the previous
phase's checkpoint has been saved, and a failing save propagates: the run
stops there and the next execution resumes from the last saved checkpoint.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from edgedeploy.config import EdgeDeployConfig
from edgedeploy.core.exceptions import DeploymentCancelled, DeploymentError
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.audit import DeploymentAuditLogger
from edgedeploy.orchestration.capabilities import Capability, CapabilityRegistry
from edgedeploy.orchestration.executor import PhaseExecutor
from edgedeploy.orchestration.recovery import RecoveryManager
from edgedeploy.orchestration.resilience import CircuitBreakerRegistry, RetryPolicy
from edgedeploy.orchestration.rollback import RollbackManager, RollbackResult
from edgedeploy.orchestration.scopes import ScopeProfile, get_profile
from edgedeploy.state.models import (
    Checkpoint,
    CheckpointRecord,
    DeploymentResult,
    DeploymentScope,
    DeploymentState,
    DeploymentStatus,
    TargetState,
    TargetStatus,
    utcnow,
)
from edgedeploy.state.store import StateStore, default_holder, validate_deployment_id
from edgedeploy.state.versioning import CURRENT_TOPOLOGY_VERSION, phases_for

logger = StructuredLogger(__name__)


def terminal_status(state: DeploymentState) -> DeploymentStatus:
    """Terminal status implied by per-target outcomes.

    ``success`` only if every target completed. Otherwise a single partial
    rollback makes the deployment ``partially_rolled_back``; if every
    unsuccessful target was fully rolled back it is ``rolled_back``; anything
    else is ``failed``.
    """
    unsuccessful = [
        state.target(t).status for t in state.targets if state.target(t).status != TargetStatus.COMPLETED
    ]
    if not unsuccessful:
        return DeploymentStatus.SUCCESS
    if TargetStatus.PARTIALLY_ROLLED_BACK in unsuccessful:
        return DeploymentStatus.PARTIALLY_ROLLED_BACK
    if all(s == TargetStatus.ROLLED_BACK for s in unsuccessful):
        return DeploymentStatus.ROLLED_BACK
    return DeploymentStatus.FAILED


class Orchestrator:
    """Drives deployments through the phase sequence.

    Args:
        store: State store
        registry: Capabilities resolvable by scope tables
        config: Retry, circuit breaker, execution and scope settings
        audit: Audit logger for rollbacks and terminal results
        sleep: Awaitable sleep used for retry backoff
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        store: StateStore,
        registry: CapabilityRegistry,
        config: EdgeDeployConfig | None = None,
        audit: DeploymentAuditLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or EdgeDeployConfig()
        self.audit = audit
        self.retry_policy = RetryPolicy.from_config(self.config.retry, rng=rng)
        self.breakers = CircuitBreakerRegistry(self.config.circuit_breaker)
        self.rollback = RollbackManager(registry, persist=store.save)
        self.recovery = RecoveryManager(store, self.rollback)
        self._sleep = sleep

    def profile_for(self, scope: DeploymentScope | str) -> ScopeProfile:
        return get_profile(scope, self.config)

    def execute(
        self,
        deployment_id: str,
        scope: DeploymentScope | str | None = None,
        targets: Sequence[str] | None = None,
        config: dict[str, Any] | None = None,
        holder: str | None = None,
    ) -> DeploymentResult:
        """Start, resume or look up a deployment.

        A new id needs ``scope`` and ``targets``. A stored non-terminal id is
        resumed from its last checkpoint (arguments other than the id are
        ignored). A terminal id returns its stored result without running
        anything.

        Raises:
            LockTimeout: If another holder owns the deployment
            DeploymentCancelled: If a cancel was requested before it started,
                or is pending while another live holder runs it
            UnknownCapability: If the scope table names unregistered capabilities
            CorruptState: If the stored state fails verification
        """
        validate_deployment_id(deployment_id)
        holder = holder or default_holder()
        if self.store.is_cancel_requested(deployment_id):
            self._check_cancel_before_lock(deployment_id, holder)

        with self.store.lock(deployment_id, holder=holder):
            state = self.store.load(deployment_id) if self.store.exists(deployment_id) else None

            if state is not None and state.is_terminal:
                logger.info(
                    "Deployment already terminal",
                    deployment_id=deployment_id,
                    status=state.status.value,
                )
                return DeploymentResult.from_state(state)

            resuming = state is not None
            if state is None:
                state = self._initialize(deployment_id, scope, targets, config)

            profile = self.profile_for(state.scope)
            bound = profile.resolve(self.registry, state.phases)
            if resuming:
                self.recovery.prepare_resume(state, holder)
                self.recovery.finish_rollbacks(state)

            state.run_id = holder
            self.store.save(state)
            return self._run(state, profile, bound, holder)

    def _check_cancel_before_lock(self, deployment_id: str, holder: str) -> None:
        """Handle a pending cancel without waiting on the lock.

        A never-started deployment is dropped. One owned by another live
        holder is left for that holder to unwind. Otherwise the caller takes
        the lock and the run unwinds before its next phase.
        """
        if not self.store.exists(deployment_id):
            self.store.clear_cancel(deployment_id)
            raise DeploymentCancelled(
                f"Deployment {deployment_id} was cancelled before it started",
                deployment_id=deployment_id,
            )

        lease = self.store.lock_info(deployment_id)
        if lease is not None and lease.holder != holder and not lease.is_expired():
            raise DeploymentCancelled(
                f"Deployment {deployment_id} has a pending cancel and is being unwound by {lease.holder}",
                deployment_id=deployment_id,
            )

    def _initialize(
        self,
        deployment_id: str,
        scope: DeploymentScope | str | None,
        targets: Sequence[str] | None,
        config: dict[str, Any] | None,
    ) -> DeploymentState:
        if scope is None or not targets:
            raise DeploymentError(
                f"Deployment {deployment_id} does not exist; scope and targets are required to start it",
                deployment_id=deployment_id,
            )

        targets = list(targets)
        if len(set(targets)) != len(targets):
            raise DeploymentError("Targets must be unique", deployment_id=deployment_id)

        profile = self.profile_for(scope)
        if profile.max_targets is not None and len(targets) > profile.max_targets:
            raise DeploymentError(
                f"Scope '{profile.scope.value}' accepts at most {profile.max_targets} target(s)",
                deployment_id=deployment_id,
                details={"targets": targets},
            )

        phases = phases_for(CURRENT_TOPOLOGY_VERSION)

        logger.info(
            "Starting deployment",
            deployment_id=deployment_id,
            scope=profile.scope.value,
            targets=len(targets),
        )
        return DeploymentState(
            deployment_id=deployment_id,
            scope=profile.scope,
            targets=targets,
            phase=phases[0],
            phases=phases,
            topology_version=CURRENT_TOPOLOGY_VERSION,
            target_states={t: TargetState(target=t) for t in targets},
            config=dict(config or {}),
        )

    def _run(
        self,
        state: DeploymentState,
        profile: ScopeProfile,
        bound: dict[str, list[Capability]],
        holder: str,
    ) -> DeploymentResult:
        deployment_id = state.deployment_id
        executor = PhaseExecutor(
            retry=self.retry_policy,
            breakers=self.breakers,
            rollback=self.rollback,
            max_parallel=profile.parallelism(self.config.execution.max_parallel),
            default_timeout=self.config.execution.capability_timeout,
            sleep=self._sleep,
            should_cancel=lambda: self.store.is_cancel_requested(deployment_id),
            heartbeat=lambda: self.store.renew(deployment_id, holder),
            heartbeat_interval=self.store.lock_config.ttl / 3,
        )

        for phase in state.remaining_phases():
            if self.store.is_cancel_requested(deployment_id):
                return self._cancel(state)
            if not state.active_targets():
                break

            self.store.renew(deployment_id, holder)
            state.phase = phase
            phase_result = executor.run_phase_sync(phase, state, bound[phase])

            if phase_result.cancelled:
                return self._cancel(state)

            for target in phase_result.critical_targets:
                self._unwind(state, target)

            self._checkpoint(state, phase)

        return self._finish(state)

    def _checkpoint(self, state: DeploymentState, phase: str) -> Checkpoint:
        """Mark a phase complete and durably save the state."""
        state.completed_phases.append(phase)
        state.checkpoint_seq += 1
        state.checkpoints.append(CheckpointRecord(sequence=state.checkpoint_seq, phase=phase))
        remaining = state.remaining_phases()
        state.phase = remaining[0] if remaining else phase
        checkpoint = self.store.save(state)
        logger.info(
            "Checkpoint saved",
            deployment_id=state.deployment_id,
            phase=phase,
            sequence=checkpoint.sequence,
        )
        return checkpoint

    def _unwind(self, state: DeploymentState, target: str | None = None) -> RollbackResult:
        result = self.rollback.rollback(state, target=target)
        if self.audit:
            self.audit.log_event(
                state.deployment_id,
                "rolled_back",
                {"status": result.outcome.value, **result.to_dict()},
            )
        return result

    def _cancel(self, state: DeploymentState) -> DeploymentResult:
        logger.warning("Deployment cancelled, unwinding", deployment_id=state.deployment_id)
        state.cancelled = True
        self._unwind(state)
        for target in state.targets:
            target_state = state.target(target)
            if target_state.status not in (TargetStatus.ROLLED_BACK, TargetStatus.PARTIALLY_ROLLED_BACK):
                target_state.status = TargetStatus.ROLLED_BACK
        state.error = "cancelled"
        return self._finish(state)

    def _finish(self, state: DeploymentState) -> DeploymentResult:
        for target in state.targets:
            target_state = state.target(target)
            if not target_state.status.is_blocked and all(
                p in target_state.completed_phases for p in state.phases
            ):
                target_state.status = TargetStatus.COMPLETED

        state.status = terminal_status(state)
        state.completed_at = utcnow()
        if state.status != DeploymentStatus.SUCCESS and not state.error:
            failed = [t for t in state.targets if state.target(t).status != TargetStatus.COMPLETED]
            state.error = "; ".join(
                f"{t}: {state.target(t).error or state.target(t).status.value}" for t in failed
            )
        self.store.save(state)
        self.store.clear_cancel(state.deployment_id)

        result = DeploymentResult.from_state(state)
        log = logger.bind(deployment_id=state.deployment_id, status=state.status.value)
        if result.succeeded:
            log.info("Deployment succeeded")
        else:
            log.error("Deployment did not succeed", error=state.error)
        if self.audit:
            self.audit.log_result(result)
        return result
