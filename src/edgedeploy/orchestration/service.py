"""Unified execution surface over every deployment scope."""

from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from edgedeploy.config import EdgeDeployConfig
from edgedeploy.core.exceptions import CorruptState, UnsupportedVersion
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.orchestration.audit import DeploymentAuditLogger
from edgedeploy.orchestration.builtin import build_registry
from edgedeploy.orchestration.capabilities import CapabilityRegistry
from edgedeploy.orchestration.orchestrator import Orchestrator
from edgedeploy.orchestration.recovery import Diagnosis
from edgedeploy.orchestration.scopes import get_profile
from edgedeploy.state.models import DeploymentResult, DeploymentScope, RecoveryRecord
from edgedeploy.state.store import StateStore

logger = StructuredLogger(__name__)


class DeploymentHandle:
    """Handle on a deployment started in the background."""

    def __init__(self, service: "DeploymentService", deployment_id: str, future: Future):
        self._service = service
        self._future = future
        self.deployment_id = deployment_id

    def result(self, timeout: float | None = None) -> DeploymentResult:
        """Wait for the run and return its result, re-raising its error."""
        return self._future.result(timeout=timeout)

    def done(self) -> bool:
        return self._future.done()

    def status(self) -> dict[str, Any]:
        return self._service.status(self.deployment_id)

    def cancel(self) -> bool:
        return self._service.cancel(self.deployment_id)

    def __repr__(self) -> str:
        return f"DeploymentHandle(deployment_id={self.deployment_id!r}, done={self.done()})"


class DeploymentService:
    """Start, observe, cancel and recover deployments of any scope.

    The scope is selected from the declared mode; single, portfolio and
    enterprise deployments run through the same :class:`Orchestrator`.
    Background runs share a bounded thread pool.
    """

    def __init__(
        self,
        config: EdgeDeployConfig | None = None,
        store: StateStore | None = None,
        registry: CapabilityRegistry | None = None,
        audit: DeploymentAuditLogger | None = None,
        orchestrator: Orchestrator | None = None,
    ):
        self.config = config or EdgeDeployConfig()
        self.store = store or StateStore.from_config(self.config)
        self.audit = audit or DeploymentAuditLogger(self.config.state.get_audit_dir())
        self.registry = registry or build_registry(self.config, self.audit)
        self.orchestrator = orchestrator or Orchestrator(
            self.store,
            self.registry,
            config=self.config,
            audit=self.audit,
        )
        self._pool: ThreadPoolExecutor | None = None

    @property
    def pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.config.execution.max_workers,
                thread_name_prefix="edgedeploy",
            )
        return self._pool

    def start(
        self,
        deployment_id: str,
        scope: DeploymentScope | str,
        targets: Sequence[str],
        config: dict[str, Any] | None = None,
    ) -> DeploymentHandle:
        """Run a deployment in the background."""
        get_profile(scope, self.config)
        future = self.pool.submit(self.execute, deployment_id, scope, list(targets), config)
        logger.debug("Submitted deployment", deployment_id=deployment_id, scope=str(scope))
        return DeploymentHandle(self, deployment_id, future)

    def execute(
        self,
        deployment_id: str,
        scope: DeploymentScope | str | None = None,
        targets: Sequence[str] | None = None,
        config: dict[str, Any] | None = None,
    ) -> DeploymentResult:
        """Run a deployment to completion in the calling thread."""
        return self.orchestrator.execute(deployment_id, scope=scope, targets=targets, config=config)

    def status(self, deployment_id: str) -> dict[str, Any]:
        """Phase, status and per-target status of a deployment.

        Raises:
            StateNotFound: If the deployment does not exist
        """
        state = self.store.load(deployment_id)
        lock = self.store.lock_info(deployment_id)
        return {
            "deployment_id": state.deployment_id,
            "scope": state.scope.value,
            "phase": state.phase,
            "status": state.status.value,
            "completed_phases": list(state.completed_phases),
            "cancelled": state.cancelled,
            "cancel_requested": self.store.is_cancel_requested(deployment_id),
            "locked_by": lock.holder if lock and not lock.is_expired() else None,
            "targets": [
                {
                    "target": t,
                    "status": state.target(t).status.value,
                    "completed_phases": list(state.target(t).completed_phases),
                    "failed_phase": state.target(t).failed_phase,
                    "error": state.target(t).error,
                }
                for t in state.targets
            ],
            "recoveries": len(state.recovery_history),
            "error": state.error,
            "updated_at": state.updated_at.isoformat(),
        }

    def result(self, deployment_id: str) -> DeploymentResult:
        return DeploymentResult.from_state(self.store.load(deployment_id))

    def cancel(self, deployment_id: str) -> bool:
        """Request cooperative cancellation.

        Returns:
            False if the deployment already reached a terminal status
        """
        if self.store.exists(deployment_id) and self.store.load(deployment_id).is_terminal:
            return False
        self.store.request_cancel(deployment_id)
        return True

    def history(self, deployment_id: str) -> list[RecoveryRecord]:
        return self.orchestrator.recovery.history(deployment_id)

    def diagnose(self, deployment_id: str) -> Diagnosis:
        return self.orchestrator.recovery.detect(deployment_id)

    def recover(self, deployment_id: str, resume: bool = True) -> tuple[RecoveryRecord, DeploymentResult | None]:
        """Recover an interrupted or corrupt deployment and optionally resume it.

        Returns:
            The recovery record and, when resumed, the deployment result
        """
        record = self.orchestrator.recovery.recover(deployment_id)
        if self.audit:
            self.audit.log_event(deployment_id, "recovered", record.to_dict())
        if not resume:
            return record, None
        return record, self.execute(deployment_id)

    def list_deployments(self) -> list[dict[str, Any]]:
        """Summary of every stored deployment."""
        summaries = []
        for deployment_id in self.store.list_ids():
            try:
                state = self.store.load(deployment_id)
            except (CorruptState, UnsupportedVersion) as e:
                summaries.append({"deployment_id": deployment_id, "status": "unreadable", "error": e.message})
                continue
            summaries.append({
                "deployment_id": deployment_id,
                "scope": state.scope.value,
                "status": state.status.value,
                "phase": state.phase,
                "targets": len(state.targets),
                "updated_at": state.updated_at.isoformat(),
            })
        return summaries

    def archive(self, days: int | None = None) -> list[str]:
        return self.store.archive(days if days is not None else self.config.state.archive_after_days)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None

    def __enter__(self) -> "DeploymentService":
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
