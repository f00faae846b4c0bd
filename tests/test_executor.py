"""Tests for per-target phase execution."""

import asyncio
import random
import threading
import time

import pytest

from edgedeploy.config import CircuitBreakerConfig
from edgedeploy.core.exceptions import LockTimeout
from edgedeploy.orchestration.executor import PhaseExecutor
from edgedeploy.orchestration.resilience import CircuitBreakerRegistry, RetryPolicy
from edgedeploy.orchestration.results import TargetPhaseStatus
from edgedeploy.orchestration.rollback import RollbackManager
from edgedeploy.state.models import (
    CapabilityOutcome,
    DeploymentScope,
    DeploymentState,
    TargetState,
    TargetStatus,
)
from edgedeploy.state.versioning import phases_for

A, B, C = "a.example.com", "b.example.com", "c.example.com"


def make_state(targets=(A,)) -> DeploymentState:
    return DeploymentState(
        deployment_id="rel-1",
        scope=DeploymentScope.PORTFOLIO,
        targets=list(targets),
        phases=phases_for(),
        target_states={t: TargetState(target=t) for t in targets},
        config={"region": "eu"},
    )


@pytest.fixture
def make_executor(make_registry, sleeper):
    def _make(
        max_attempts: int = 3,
        max_parallel: int = 1,
        failure_threshold: int = 10,
        should_cancel=None,
        heartbeat=None,
        heartbeat_interval=None,
    ) -> PhaseExecutor:
        return PhaseExecutor(
            retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.5, max_delay=10, jitter=0.2, rng=random.Random(5)),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=failure_threshold)),
            rollback=RollbackManager(make_registry()),
            max_parallel=max_parallel,
            default_timeout=30,
            sleep=sleeper,
            should_cancel=should_cancel,
            heartbeat=heartbeat,
            heartbeat_interval=heartbeat_interval,
        )

    return _make


class TestRetries:
    """Tests for retry behaviour of a single capability."""

    def test_succeeds_on_kth_attempt(self, make_executor, scripted, sleeper):
        capability = scripted("generate_secrets", fail_times={A: 2})
        state = make_state()

        result = make_executor(max_attempts=4).run_phase_sync("construct", state, [capability])

        cap_result = result.targets[A].results[0]
        assert cap_result.outcome == CapabilityOutcome.RETRIED
        assert cap_result.attempts == 3
        assert len(cap_result.delays) == 2
        assert cap_result.delays == sorted(cap_result.delays)
        assert sleeper.delays == cap_result.delays
        assert cap_result.output["attempt"] == 3
        assert state.target(A).completed_phases == ["construct"]
        assert state.target(A).results["construct"] == [cap_result]

    def test_first_attempt_success(self, make_executor, scripted, sleeper):
        result = make_executor().run_phase_sync("construct", make_state(), [scripted("generate_secrets")])
        cap_result = result.targets[A].results[0]
        assert cap_result.outcome == CapabilityOutcome.SUCCESS
        assert cap_result.attempts == 1
        assert cap_result.last_error is None
        assert sleeper.delays == []

    def test_exhausted_retries(self, make_executor, scripted, sleeper):
        capability = scripted("generate_secrets", always_fail={A})
        state = make_state()

        result = make_executor(max_attempts=3).run_phase_sync("construct", state, [capability])

        cap_result = result.targets[A].results[0]
        assert cap_result.outcome == CapabilityOutcome.FAILED
        assert cap_result.attempts == 3
        assert cap_result.error_kind == "retryable"
        assert len(sleeper.delays) == 2
        assert result.targets[A].status == TargetPhaseStatus.FAILED
        assert state.target(A).error.startswith("generate_secrets failed after 3 attempt(s)")
        assert state.target(A).failed_phase == "construct"

    def test_fatal_failure_is_not_retried(self, make_executor, scripted, sleeper):
        capability = scripted("generate_secrets", always_fail={A}, fatal=True)
        result = make_executor(max_attempts=5).run_phase_sync("construct", make_state(), [capability])

        cap_result = result.targets[A].results[0]
        assert cap_result.attempts == 1
        assert cap_result.error_kind == "fatal"
        assert sleeper.delays == []
        assert result.targets[A].critical_failure

    def test_open_circuit_stops_retrying(self, make_executor, scripted):
        capability = scripted("generate_secrets", always_fail={A})
        result = make_executor(max_attempts=5, failure_threshold=2).run_phase_sync(
            "construct", make_state(), [capability]
        )

        cap_result = result.targets[A].results[0]
        assert cap_result.attempts == 2
        assert cap_result.error_kind == "circuit_open"

    def test_context_carries_attempt_and_timeout(self, make_executor, scripted):
        seen = []
        capability = scripted(
            "generate_secrets",
            fail_times={A: 1},
            on_execute=lambda target, context: seen.append((context.attempt, context.timeout, context.config)),
        )
        make_executor().run_phase_sync("construct", make_state(), [capability])
        assert seen == [(1, 30, {"region": "eu"}), (2, 30, {"region": "eu"})]


class TestTargetFailures:
    """Tests for how failures affect a target and its siblings."""

    def test_non_critical_failure_runs_remaining_capabilities(self, make_executor, scripted, calls):
        state = make_state()
        capabilities = [scripted("generate_secrets", always_fail={A}), scripted("provision_database")]

        result = make_executor(max_attempts=1).run_phase_sync("construct", state, capabilities)

        assert calls.executed(A) == ["generate_secrets", "provision_database"]
        assert result.targets[A].status == TargetPhaseStatus.FAILED
        assert not result.targets[A].critical_failure
        assert result.critical_targets == []
        assert state.target(A).status == TargetStatus.FAILED
        assert list(state.target(A).outputs) == ["provision_database"]

    def test_critical_failure_stops_target(self, make_executor, scripted, calls):
        state = make_state()
        capabilities = [scripted("deploy_artifact", critical=True, always_fail={A}), scripted("health_check")]

        result = make_executor(max_attempts=2).run_phase_sync("orchestrate", state, capabilities)

        assert calls.executed(A) == ["deploy_artifact", "deploy_artifact"]
        assert result.critical_targets == [A]
        assert state.target(A).critical_failure

    def test_failure_is_isolated_to_its_target(self, make_executor, scripted, calls):
        state = make_state((A, B, C))
        capabilities = [scripted("deploy_artifact", critical=True, always_fail={B}), scripted("health_check")]

        result = make_executor(max_attempts=1, max_parallel=3).run_phase_sync("orchestrate", state, capabilities)

        assert sorted(result.completed_targets) == [A, C]
        assert result.failed_targets == [B]
        assert calls.executed(A) == ["deploy_artifact", "health_check"]
        assert calls.executed(C) == ["deploy_artifact", "health_check"]
        assert calls.executed(B) == ["deploy_artifact"]
        assert state.target(A).completed_phases == ["orchestrate"]
        assert state.target(B).completed_phases == []

    def test_blocked_target_is_skipped(self, make_executor, scripted, calls):
        state = make_state((A, B))
        state.target(B).status = TargetStatus.ROLLED_BACK

        result = make_executor().run_phase_sync("construct", state, [scripted("generate_secrets")], targets=[A, B])

        assert result.targets[B].status == TargetPhaseStatus.SKIPPED
        assert calls.executed(B) == []

    def test_completed_phase_is_skipped(self, make_executor, scripted, calls):
        state = make_state()
        state.target(A).completed_phases.append("construct")

        result = make_executor().run_phase_sync("construct", state, [scripted("generate_secrets")])

        assert result.targets[A].status == TargetPhaseStatus.SKIPPED
        assert calls.executed() == []


class TestRollbackRegistration:
    """Tests for registering compensations as capabilities succeed."""

    def test_only_successful_compensable_capabilities_register(self, make_executor, scripted):
        state = make_state()
        capabilities = [
            scripted("generate_secrets"),
            scripted("validate_config", compensable=False),
            scripted("provision_database", always_fail={A}),
        ]

        make_executor(max_attempts=1).run_phase_sync("construct", state, capabilities)

        assert [a.id for a in state.rollback_stack] == ["construct:a.example.com:generate_secrets"]


class TestScheduling:
    """Tests for ordering, concurrency, cancellation and heartbeats."""

    def test_sequential_order(self, make_executor, scripted, calls):
        state = make_state((A, B))
        make_executor(max_parallel=1).run_phase_sync(
            "construct", state, [scripted("generate_secrets"), scripted("provision_database")]
        )
        assert calls.calls == [
            ("execute", "generate_secrets", A),
            ("execute", "provision_database", A),
            ("execute", "generate_secrets", B),
            ("execute", "provision_database", B),
        ]

    def test_parallelism_is_bounded(self, make_executor, scripted):
        running = 0
        peak = 0
        mutex = threading.Lock()

        def track(target, context):
            nonlocal running, peak
            with mutex:
                running += 1
                peak = max(peak, running)
            time.sleep(0.05)
            with mutex:
                running -= 1

        state = make_state(("t1", "t2", "t3", "t4", "t5"))
        result = make_executor(max_parallel=2).run_phase_sync(
            "construct", state, [scripted("generate_secrets", on_execute=track)]
        )

        assert len(result.completed_targets) == 5
        assert 1 <= peak <= 2

    def test_outputs_flow_to_later_capabilities(self, make_executor, scripted):
        seen = {}
        capabilities = [
            scripted("generate_secrets"),
            scripted("provision_database", on_execute=lambda t, c: seen.update(c.outputs)),
        ]
        make_executor().run_phase_sync("construct", make_state(), capabilities)
        assert seen["generate_secrets"]["target"] == A

    def test_cancel_between_capabilities(self, make_executor, scripted, calls):
        state = make_state((A, B))
        executor = make_executor(should_cancel=lambda: len(calls.calls) >= 1)

        result = executor.run_phase_sync(
            "construct", state, [scripted("generate_secrets"), scripted("provision_database")]
        )

        assert result.cancelled
        assert result.targets[A].status == TargetPhaseStatus.CANCELLED
        assert calls.executed() == ["generate_secrets"]
        assert state.target(A).completed_phases == []

    def test_heartbeat_before_each_capability(self, make_executor, scripted):
        beats = []
        state = make_state((A, B))
        make_executor(heartbeat=lambda: beats.append(1)).run_phase_sync(
            "construct", state, [scripted("generate_secrets"), scripted("provision_database")]
        )
        assert len(beats) == 4

    def test_run_phase_is_awaitable(self, make_executor, scripted):
        state = make_state()
        result = asyncio.run(make_executor().run_phase("assess", state, [scripted("validate_config")]))
        assert result.all_succeeded
        assert result.to_dict()["completed"] == [A]


class TestLeaseKeepalive:
    """Tests for renewing the lease while a capability is in flight."""

    def test_heartbeat_repeats_during_long_call(self, make_executor, scripted):
        beats = []
        capability = scripted("deploy_artifact", on_execute=lambda t, c: time.sleep(0.3))

        result = make_executor(heartbeat=lambda: beats.append(1), heartbeat_interval=0.05).run_phase_sync(
            "execute", make_state(), [capability]
        )

        assert result.all_succeeded
        assert len(beats) >= 3

    def test_no_keepalive_without_interval(self, make_executor, scripted):
        beats = []
        capability = scripted("deploy_artifact", on_execute=lambda t, c: time.sleep(0.1))
        make_executor(heartbeat=lambda: beats.append(1)).run_phase_sync("execute", make_state(), [capability])
        assert len(beats) == 1

    def test_lost_lease_aborts_phase(self, make_executor, scripted, calls):
        beats = []

        def heartbeat():
            beats.append(1)
            if len(beats) > 1:
                raise LockTimeout("Lock on rel-1 was taken over", deployment_id="rel-1", holder="other")

        capability = scripted("deploy_artifact", on_execute=lambda t, c: time.sleep(0.2))
        executor = make_executor(heartbeat=heartbeat, heartbeat_interval=0.02)

        with pytest.raises(LockTimeout):
            executor.run_phase_sync("execute", make_state(), [capability])

        assert calls.count("deploy_artifact") == 1
