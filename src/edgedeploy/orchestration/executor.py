"""Per-target execution of one phase's capabilities."""

import asyncio
import functools
from collections.abc import Awaitable, Callable, Sequence

from edgedeploy.core.async_utils import gather_with_concurrency, run_sync
from edgedeploy.core.exceptions import CapabilityFatalFailure, CircuitOpen, EdgeDeployError, LockTimeout
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.capabilities import Capability, CapabilityContext
from edgedeploy.orchestration.resilience import CircuitBreakerRegistry, RetryPolicy
from edgedeploy.orchestration.results import PhaseResult, TargetPhaseResult, TargetPhaseStatus
from edgedeploy.orchestration.rollback import RollbackManager
from edgedeploy.state.models import (
    CapabilityOutcome,
    CapabilityResult,
    DeploymentState,
    TargetStatus,
)

logger = StructuredLogger(__name__)


def _error_message(error: BaseException) -> str:
    message = error.message if isinstance(error, EdgeDeployError) else str(error)
    return message or type(error).__name__


class PhaseExecutor:
    """Runs a phase's capabilities for every active target.

    Targets run one after another when ``max_parallel`` is 1 and otherwise
    concurrently, bounded by a semaphore. Capabilities are synchronous and
    run in the event loop's thread pool; all state mutation happens on the
    loop thread, between awaits.

    A target's failure never aborts its siblings. A non-critical capability
    that exhausts its retries fails the target for the phase but lets the
    target's remaining capabilities in the phase run. A critical capability,
    or any capability failing fatally, stops the target at once and flags it
    for a target-scoped rollback.

    Args:
        retry: Retry and backoff policy
        breakers: Circuit breakers keyed by (capability, target)
        rollback: Registers compensations as side effects succeed
        max_parallel: Concurrent targets, 1 for strictly sequential
        default_timeout: Timeout handed to capabilities without their own
        sleep: Awaitable sleep used for backoff
        should_cancel: Polled between capability invocations
        heartbeat: Called between capability invocations, e.g. to renew a lease
        heartbeat_interval: Also call ``heartbeat`` this often while a
            capability is in flight; a failure surfaces once the call returns
    """

    def __init__(
        self,
        retry: RetryPolicy,
        breakers: CircuitBreakerRegistry,
        rollback: RollbackManager,
        max_parallel: int = 1,
        default_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        should_cancel: Callable[[], bool] | None = None,
        heartbeat: Callable[[], object] | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.retry = retry
        self.breakers = breakers
        self.rollback = rollback
        self.max_parallel = max(1, max_parallel)
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._should_cancel = should_cancel or (lambda: False)
        self._heartbeat = heartbeat
        self._heartbeat_interval = heartbeat_interval

    def run_phase_sync(
        self,
        phase: str,
        state: DeploymentState,
        capabilities: Sequence[Capability],
        targets: Sequence[str] | None = None,
    ) -> PhaseResult:
        return run_sync(self.run_phase(phase, state, capabilities, targets))

    async def run_phase(
        self,
        phase: str,
        state: DeploymentState,
        capabilities: Sequence[Capability],
        targets: Sequence[str] | None = None,
    ) -> PhaseResult:
        """Run one phase.

        Args:
            phase: Phase name
            state: Deployment state, mutated in place
            capabilities: Capabilities bound to the phase, in order
            targets: Targets to run, defaults to every unblocked target

        Returns:
            PhaseResult keyed by target
        """
        targets = list(targets) if targets is not None else state.active_targets()
        result = PhaseResult(phase=phase)
        log = logger.bind(deployment_id=state.deployment_id, phase=phase)
        log.info("Running phase", targets=len(targets), parallel=self.max_parallel)

        if self.max_parallel == 1:
            for target in targets:
                result.targets[target] = await self._run_target(phase, state, target, capabilities)
        else:
            target_results = await gather_with_concurrency(
                self.max_parallel,
                *(self._run_target(phase, state, t, capabilities) for t in targets),
            )
            for target_result in target_results:
                result.targets[target_result.target] = target_result

        result.cancelled = any(r.status == TargetPhaseStatus.CANCELLED for r in result.targets.values())
        log.info(
            "Phase finished",
            completed=len(result.completed_targets),
            failed=len(result.failed_targets),
            cancelled=result.cancelled,
        )
        return result

    async def _run_target(
        self,
        phase: str,
        state: DeploymentState,
        target: str,
        capabilities: Sequence[Capability],
    ) -> TargetPhaseResult:
        target_state = state.target(target)
        if target_state.status.is_blocked:
            return TargetPhaseResult(target, phase, TargetPhaseStatus.SKIPPED, error="target blocked")
        if phase in target_state.completed_phases:
            return TargetPhaseResult(target, phase, TargetPhaseStatus.SKIPPED, error="phase already completed")

        target_state.status = TargetStatus.RUNNING
        results: list[CapabilityResult] = []
        outcome = TargetPhaseResult(target, phase, TargetPhaseStatus.COMPLETED, results=results)

        for capability in capabilities:
            if self._should_cancel():
                outcome.status = TargetPhaseStatus.CANCELLED
                outcome.error = "cancelled"
                break
            if self._heartbeat:
                self._heartbeat()

            cap_result = await self._invoke(phase, state, target, capability)
            results.append(cap_result)

            if cap_result.succeeded:
                target_state.outputs[capability.name] = cap_result.output
                if capability.compensable:
                    self.rollback.record(state, phase, target, capability.name)
                continue

            outcome.status = TargetPhaseStatus.FAILED
            outcome.error = outcome.error or (
                f"{capability.name} failed after {cap_result.attempts} attempt(s): {cap_result.last_error}"
            )
            if capability.critical or cap_result.error_kind == "fatal":
                outcome.critical_failure = True
                break

        target_state.results[phase] = results
        if outcome.status == TargetPhaseStatus.COMPLETED:
            target_state.completed_phases.append(phase)
        elif outcome.status == TargetPhaseStatus.FAILED:
            target_state.status = TargetStatus.FAILED
            target_state.failed_phase = phase
            target_state.error = outcome.error
            target_state.critical_failure = outcome.critical_failure
            logger.error(
                "Target failed",
                deployment_id=state.deployment_id,
                phase=phase,
                target=target,
                critical=outcome.critical_failure,
                error=outcome.error,
            )
        return outcome

    async def _invoke(
        self,
        phase: str,
        state: DeploymentState,
        target: str,
        capability: Capability,
    ) -> CapabilityResult:
        """Call a capability with retry, backoff and circuit breaking."""
        breaker = self.breakers.get(capability.name, target)
        log = logger.bind(deployment_id=state.deployment_id, capability=capability.name, target=target)
        result = CapabilityResult(
            capability=capability.name,
            target=target,
            outcome=CapabilityOutcome.FAILED,
            critical=capability.critical,
        )

        while result.attempts < self.retry.max_attempts:
            try:
                breaker.before_call(capability.name, target)
            except CircuitOpen as e:
                result.last_error = e.message
                result.error_kind = "circuit_open"
                log.warning("Circuit open, skipping call", retry_after=round(e.retry_after or 0, 2))
                break

            result.attempts += 1
            context = CapabilityContext(
                deployment_id=state.deployment_id,
                phase=phase,
                target=target,
                scope=state.scope.value,
                config=state.config,
                outputs=dict(state.target(target).outputs),
                attempt=result.attempts,
                timeout=capability.timeout or self.default_timeout,
            )

            try:
                output = await self._call(capability, target, context)
            except LockTimeout:
                raise
            except CapabilityFatalFailure as e:
                breaker.record_failure()
                result.last_error = _error_message(e)
                result.error_kind = "fatal"
                log.error("Capability failed fatally", attempt=result.attempts, error=result.last_error)
                break
            except Exception as e:
                breaker.record_failure()
                result.last_error = _error_message(e)
                result.error_kind = "retryable"
                log.warning("Capability failed", attempt=result.attempts, error=result.last_error)
                if result.attempts >= self.retry.max_attempts:
                    break
                delay = self.retry.next_delay(len(result.delays) + 1, result.delays[-1] if result.delays else 0.0)
                result.delays.append(delay)
                await self._sleep(delay)
                continue

            breaker.record_success()
            result.output = output
            result.outcome = CapabilityOutcome.SUCCESS if result.attempts == 1 else CapabilityOutcome.RETRIED
            result.last_error = None if result.attempts == 1 else result.last_error
            result.error_kind = None
            log.debug("Capability succeeded", attempts=result.attempts)
            return result

        return result

    async def _call(self, capability: Capability, target: str, context: CapabilityContext) -> object:
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, functools.partial(capability.execute, target, context))
        if not self._heartbeat or not self._heartbeat_interval:
            return await call

        keepalive = asyncio.ensure_future(self._keep_alive())
        try:
            return await call
        finally:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass

    async def _keep_alive(self) -> None:
        """Renew the lease until cancelled; the first failure ends the loop."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            self._heartbeat()
