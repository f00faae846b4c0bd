"""Compensating rollback of registered side effects."""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from edgedeploy.core.exceptions import EdgeDeployError, RollbackPartialFailure
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.capabilities import CapabilityContext, CapabilityRegistry
from edgedeploy.state.models import (
    DeploymentState,
    RollbackAction,
    RollbackActionStatus,
    TargetStatus,
    utcnow,
)

logger = StructuredLogger(__name__)

Persist = Callable[[DeploymentState], Any]


class RollbackOutcome(str, Enum):
    FULLY_ROLLED_BACK = "fully_rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"


@dataclass
class RollbackResult:
    """Result of unwinding a deployment's (or one target's) actions."""

    outcome: RollbackOutcome
    target: str | None = None
    compensated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def fully_rolled_back(self) -> bool:
        return self.outcome == RollbackOutcome.FULLY_ROLLED_BACK

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "target": self.target,
            "compensated": list(self.compensated),
            "failed": list(self.failed),
        }


class RollbackManager:
    """Maintains the rollback stack stored on a :class:`DeploymentState`.

    Actions stay on the stack once run, tagged with their compensation
    status, so an unwind interrupted by a crash resumes at the first action
    still pending instead of compensating anything twice.
    """

    def __init__(self, registry: CapabilityRegistry, persist: Persist | None = None):
        self.registry = registry
        self.persist = persist

    def register(self, state: DeploymentState, action: RollbackAction) -> RollbackAction:
        """Push an action for a side effect that has just succeeded.

        Registering an id already on the stack returns the existing action.
        """
        for existing in state.rollback_stack:
            if existing.id == action.id:
                return existing

        action.sequence = state.next_rollback_sequence()
        state.rollback_stack.append(action)
        logger.debug(
            "Registered rollback action",
            deployment_id=state.deployment_id,
            action=action.id,
            sequence=action.sequence,
        )
        return action

    def record(self, state: DeploymentState, phase: str, target: str, capability: str) -> RollbackAction:
        """Build and register the action for a capability's side effect."""
        return self.register(
            state,
            RollbackAction(
                id=RollbackAction.make_id(phase, target, capability),
                sequence=0,
                phase=phase,
                target=target,
                capability=capability,
            ),
        )

    def pending(self, state: DeploymentState, target: str | None = None) -> list[RollbackAction]:
        """Pending actions in execution order, newest first."""
        actions = [
            a
            for a in state.rollback_stack
            if a.status == RollbackActionStatus.PENDING and (target is None or a.target == target)
        ]
        return sorted(actions, key=lambda a: a.sequence, reverse=True)

    def rollback(
        self,
        state: DeploymentState,
        target: str | None = None,
        persist: Persist | None = None,
    ) -> RollbackResult:
        """Run pending compensations strictly in reverse registration order.

        A failing compensation is logged and recorded, and unwinding
        continues with the next action. The state is persisted after every
        action when a persist callback is available.

        Args:
            state: Deployment state holding the stack
            target: Only unwind this target's actions
            persist: Overrides the manager's persist callback
        """
        persist = persist or self.persist
        scoped = [a for a in state.rollback_stack if target is None or a.target == target]
        affected = [target] if target else sorted({a.target for a in scoped}, key=state.targets.index)

        for name in affected:
            state.target(name).status = TargetStatus.ROLLING_BACK
        if persist:
            persist(state)

        log = logger.bind(deployment_id=state.deployment_id)
        log.info("Rolling back", target=target or "*", pending=len(self.pending(state, target)))

        for action in self.pending(state, target):
            self._compensate(state, action)
            if persist:
                persist(state)

        unwound = sorted(scoped, key=lambda a: a.sequence, reverse=True)
        failed = [a.id for a in unwound if a.status == RollbackActionStatus.FAILED]
        compensated = [a.id for a in unwound if a.status == RollbackActionStatus.COMPENSATED]

        for name in affected:
            target_failed = any(a.target == name and a.status == RollbackActionStatus.FAILED for a in scoped)
            state.target(name).status = (
                TargetStatus.PARTIALLY_ROLLED_BACK if target_failed else TargetStatus.ROLLED_BACK
            )
        if persist:
            persist(state)

        outcome = RollbackOutcome.PARTIALLY_ROLLED_BACK if failed else RollbackOutcome.FULLY_ROLLED_BACK
        if failed:
            log.error("Rollback incomplete", target=target or "*", failed=",".join(failed))
        else:
            log.info("Rollback complete", target=target or "*", compensated=len(compensated))
        return RollbackResult(outcome=outcome, target=target, compensated=compensated, failed=failed)

    def rollback_or_raise(
        self,
        state: DeploymentState,
        target: str | None = None,
        persist: Persist | None = None,
    ) -> RollbackResult:
        """Like :meth:`rollback`, raising if any compensation failed.

        Raises:
            RollbackPartialFailure: Carrying the result in ``details``
        """
        result = self.rollback(state, target=target, persist=persist)
        if not result.fully_rolled_back:
            raise RollbackPartialFailure(
                f"Rollback of {state.deployment_id} left {len(result.failed)} action(s) uncompensated",
                failed_actions=result.failed,
                details={"deployment_id": state.deployment_id, "result": result.to_dict()},
            )
        return result

    def _compensate(self, state: DeploymentState, action: RollbackAction) -> None:
        target_state = state.target_states.get(action.target)
        context = CapabilityContext(
            deployment_id=state.deployment_id,
            phase=action.phase,
            target=action.target,
            scope=state.scope.value,
            config=state.config,
            outputs=dict(target_state.outputs) if target_state else {},
        )
        try:
            capability = self.registry.get(action.capability)
            capability.compensate(action.target, context)
        except Exception as e:
            message = e.message if isinstance(e, EdgeDeployError) else str(e)
            self._mark_failed(state, action, message or type(e).__name__)
        else:
            action.status = RollbackActionStatus.COMPENSATED
            action.error = None
            logger.info("Compensated", deployment_id=state.deployment_id, action=action.id)
        action.finished_at = utcnow()

    def _mark_failed(self, state: DeploymentState, action: RollbackAction, error: str) -> None:
        action.status = RollbackActionStatus.FAILED
        action.error = error
        logger.error(
            "Compensation failed",
            deployment_id=state.deployment_id,
            action=action.id,
            error=error,
        )
