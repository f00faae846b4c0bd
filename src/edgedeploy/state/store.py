"""Checksummed, locked persistence of deployment state.

Each deployment is stored under its own key as an envelope::

    {"checksum": "<sha256>", "saved_at": "<iso8601>", "state": {...}}

The checksum covers the canonical JSON encoding of ``saved_at`` and
``state``. The envelope is itself written canonically, so the raw bytes on
disk have exactly one valid form; anything else fails with
:class:`CorruptState`. The previous generation is kept alongside the current
one so a corrupt write can be rolled back to the last verified snapshot.
"""

import hashlib
import json
import os
import re
import socket
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, TypeVar

from edgedeploy.config import EdgeDeployConfig, LockConfig
from edgedeploy.core.exceptions import (
    CorruptState,
    LockTimeout,
    StateError,
    StateNotFound,
    UnsupportedVersion,
)
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.state.backends import FileSystemBackend, InMemoryBackend, StorageBackend
from edgedeploy.state.models import (
    Checkpoint,
    DeploymentState,
    DeploymentStatus,
    LockInfo,
    _iso,
    _parse,
    utcnow,
)
from edgedeploy.state.versioning import StateVersioning, versioning

logger = StructuredLogger(__name__)

T = TypeVar("T")

STATE_PREFIX = "deployments/"
CANCEL_PREFIX = "cancel/"
PREVIOUS_SUFFIX = ".previous"

_DEPLOYMENT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for checksums and on-disk envelopes."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    ).encode("ascii")


def compute_checksum(saved_at: str, state: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json({"saved_at": saved_at, "state": state})).hexdigest()


def default_holder() -> str:
    """Lock holder id unique to this process and call."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def validate_deployment_id(deployment_id: str) -> str:
    if not isinstance(deployment_id, str) or not _DEPLOYMENT_ID.match(deployment_id):
        raise StateError(
            f"Invalid deployment id: {deployment_id!r}",
            deployment_id=str(deployment_id),
        )
    return deployment_id


class StateStore:
    """Durable store of :class:`DeploymentState` keyed by deployment id.

    Args:
        backend: Storage backend, in-memory if omitted
        lock_config: Lock wait, lease and poll settings
        state_versioning: Migration registry applied on load
    """

    def __init__(
        self,
        backend: StorageBackend | None = None,
        lock_config: LockConfig | None = None,
        state_versioning: StateVersioning | None = None,
    ):
        self.backend = backend or InMemoryBackend()
        self.lock_config = lock_config or LockConfig()
        self.versioning = state_versioning or versioning
        self._held: dict[tuple[str, str], int] = {}
        self._held_mutex = threading.Lock()

    @classmethod
    def from_config(cls, config: EdgeDeployConfig) -> "StateStore":
        """Create a store from configuration."""
        if config.state.backend == "memory":
            backend: StorageBackend = InMemoryBackend()
        else:
            backend = FileSystemBackend(config.state.get_state_dir())
        return cls(backend=backend, lock_config=config.lock)

    @staticmethod
    def _key(deployment_id: str) -> str:
        return f"{STATE_PREFIX}{validate_deployment_id(deployment_id)}.json"

    @staticmethod
    def _previous_key(deployment_id: str) -> str:
        return f"{STATE_PREFIX}{validate_deployment_id(deployment_id)}{PREVIOUS_SUFFIX}.json"

    @staticmethod
    def _cancel_key(deployment_id: str) -> str:
        return f"{CANCEL_PREFIX}{validate_deployment_id(deployment_id)}"

    # Encoding

    def encode(self, state: DeploymentState) -> tuple[bytes, Checkpoint]:
        """Encode a state into its checksummed envelope."""
        saved_at = _iso(utcnow())
        payload = state.to_dict()
        try:
            checksum = compute_checksum(saved_at, payload)
            raw = canonical_json({"checksum": checksum, "saved_at": saved_at, "state": payload})
        except (TypeError, ValueError) as e:
            raise StateError(
                f"State is not JSON-serializable: {e}",
                deployment_id=state.deployment_id,
            )

        checkpoint = Checkpoint(
            deployment_id=state.deployment_id,
            sequence=state.checkpoint_seq,
            phase=state.phase,
            saved_at=_parse(saved_at),
            checksum=checksum,
        )
        return raw, checkpoint

    def decode(self, deployment_id: str, raw: bytes) -> DeploymentState:
        """Verify and decode an envelope.

        Raises:
            CorruptState: On undecodable bytes, non-canonical encoding or
                checksum mismatch
            UnsupportedVersion: If the schema version cannot be migrated
        """
        try:
            envelope = json.loads(raw.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptState(f"State payload is not valid JSON: {e}", deployment_id=deployment_id)

        if not isinstance(envelope, dict) or set(envelope) != {"checksum", "saved_at", "state"}:
            raise CorruptState("State envelope is malformed", deployment_id=deployment_id)

        try:
            canonical = canonical_json(envelope)
        except ValueError as e:
            raise CorruptState(f"State payload is not canonical: {e}", deployment_id=deployment_id)
        if canonical != raw:
            raise CorruptState("State payload is not canonically encoded", deployment_id=deployment_id)

        state_payload = envelope["state"]
        if not isinstance(state_payload, dict) or not isinstance(envelope["saved_at"], str):
            raise CorruptState("State envelope is malformed", deployment_id=deployment_id)

        expected = compute_checksum(envelope["saved_at"], state_payload)
        if expected != envelope["checksum"]:
            raise CorruptState(
                "State checksum mismatch",
                deployment_id=deployment_id,
                details={"expected": expected, "stored": envelope["checksum"]},
            )

        if state_payload.get("deployment_id") != deployment_id:
            raise CorruptState(
                "State belongs to a different deployment",
                deployment_id=deployment_id,
                details={"stored_id": state_payload.get("deployment_id")},
            )

        migrated = self.versioning.migrate(state_payload)
        try:
            return DeploymentState.from_dict(migrated)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptState(f"State schema violation: {e}", deployment_id=deployment_id)

    # Load / save

    def load(self, deployment_id: str) -> DeploymentState:
        """Load and verify the current state of a deployment.

        Raises:
            StateNotFound: If nothing has been saved for the id
            CorruptState: If verification fails
            UnsupportedVersion: If the schema version cannot be migrated
        """
        raw = self.backend.read(self._key(deployment_id))
        if raw is None:
            raise StateNotFound(f"No state for deployment {deployment_id}", deployment_id=deployment_id)
        return self.decode(deployment_id, raw)

    def save(self, state: DeploymentState) -> Checkpoint:
        """Durably save a state, keeping the replaced generation as a backup.

        The state is stamped with the current schema version and update time
        before encoding, so ``load(save(x)) == x``.
        """
        key = self._key(state.deployment_id)
        state.schema_version = self.versioning.current_version
        state.updated_at = utcnow()
        raw, checkpoint = self.encode(state)

        current = self.backend.read(key)
        if current is not None:
            self.backend.write(self._previous_key(state.deployment_id), current)
        self.backend.write(key, raw)

        logger.debug(
            "Saved state",
            deployment_id=state.deployment_id,
            phase=state.phase,
            sequence=checkpoint.sequence,
            checksum=checkpoint.checksum[:12],
        )
        return checkpoint

    def exists(self, deployment_id: str) -> bool:
        return self.backend.read(self._key(deployment_id)) is not None

    def list_ids(self) -> list[str]:
        """Ids of all stored deployments."""
        ids = []
        for key in self.backend.keys(STATE_PREFIX):
            name = key[len(STATE_PREFIX):]
            if not name.endswith(".json"):
                continue
            name = name[: -len(".json")]
            if name.endswith(PREVIOUS_SUFFIX):
                continue
            ids.append(name)
        return sorted(ids)

    def delete(self, deployment_id: str) -> None:
        """Remove a deployment, its backup generation and cancel marker."""
        self.backend.delete(self._key(deployment_id))
        self.backend.delete(self._previous_key(deployment_id))
        self.backend.delete(self._cancel_key(deployment_id))

    def archive(self, days: int = 30) -> list[str]:
        """Delete successful terminal states completed more than ``days`` ago.

        Failed and rolled-back states are retained indefinitely.

        Returns:
            Archived deployment ids
        """
        cutoff = utcnow() - timedelta(days=days)
        archived = []
        for deployment_id in self.list_ids():
            try:
                state = self.load(deployment_id)
            except (CorruptState, UnsupportedVersion) as e:
                logger.warning("Skipping unreadable state", deployment_id=deployment_id, error=e.message)
                continue

            if state.status != DeploymentStatus.SUCCESS:
                continue
            finished = state.completed_at or state.updated_at
            if finished < cutoff:
                self.delete(deployment_id)
                archived.append(deployment_id)

        if archived:
            logger.info("Archived deployments", count=len(archived), days=days)
        return archived

    def load_previous(self, deployment_id: str) -> DeploymentState:
        """Load and verify the backup generation of a deployment."""
        raw = self.backend.read(self._previous_key(deployment_id))
        if raw is None:
            raise StateNotFound(
                f"No previous state generation for deployment {deployment_id}",
                deployment_id=deployment_id,
            )
        return self.decode(deployment_id, raw)

    def restore_previous(self, deployment_id: str) -> DeploymentState:
        """Replace the current generation with the verified backup generation."""
        raw = self.backend.read(self._previous_key(deployment_id))
        if raw is None:
            raise StateNotFound(
                f"No previous state generation for deployment {deployment_id}",
                deployment_id=deployment_id,
            )
        state = self.decode(deployment_id, raw)
        self.backend.write(self._key(deployment_id), raw)
        logger.warning("Restored previous state generation", deployment_id=deployment_id)
        return state

    # Cancellation

    def request_cancel(self, deployment_id: str) -> None:
        """Persist a cancel request. Not guarded by the deployment lock."""
        marker = {"deployment_id": deployment_id, "requested_at": _iso(utcnow())}
        self.backend.write(self._cancel_key(deployment_id), canonical_json(marker))
        logger.info("Cancel requested", deployment_id=deployment_id)

    def is_cancel_requested(self, deployment_id: str) -> bool:
        return self.backend.read(self._cancel_key(deployment_id)) is not None

    def clear_cancel(self, deployment_id: str) -> None:
        self.backend.delete(self._cancel_key(deployment_id))

    # Locking

    def lock_info(self, deployment_id: str) -> LockInfo | None:
        """Current lease on a deployment, or None. Expired leases are reported as-is."""
        return self.backend.get_lock(validate_deployment_id(deployment_id))

    def is_locked(self, deployment_id: str) -> bool:
        """True if a live holder owns the deployment."""
        info = self.lock_info(deployment_id)
        return info is not None and not info.is_expired()

    @contextmanager
    def lock(
        self,
        deployment_id: str,
        holder: str | None = None,
        wait_timeout: float | None = None,
    ) -> Iterator[LockInfo]:
        """Hold the exclusive lock on a deployment.

        Re-entrant for the same holder. An expired lease left behind by a
        crashed holder is taken over.

        Args:
            deployment_id: Deployment to lock
            holder: Holder id, generated if omitted
            wait_timeout: Maximum wait in seconds, defaults to the configured wait

        Raises:
            LockTimeout: If the lock is not acquired within the wait
        """
        validate_deployment_id(deployment_id)
        holder = holder or default_holder()
        held_key = (deployment_id, holder)

        with self._held_mutex:
            depth = self._held.get(held_key, 0)
            if depth:
                self._held[held_key] = depth + 1

        if depth:
            try:
                yield self.renew(deployment_id, holder)
            finally:
                self._release(held_key)
            return

        lease = self._acquire(deployment_id, holder, wait_timeout)
        with self._held_mutex:
            self._held[held_key] = 1
        try:
            yield lease
        finally:
            self._release(held_key)

    def _acquire(self, deployment_id: str, holder: str, wait_timeout: float | None) -> LockInfo:
        wait = self.lock_config.wait_timeout if wait_timeout is None else wait_timeout
        deadline = time.monotonic() + wait

        while True:
            lease = self.backend.try_acquire_lock(deployment_id, holder, self.lock_config.ttl)
            if lease is not None:
                logger.debug("Lock acquired", deployment_id=deployment_id, holder=holder)
                return lease
            if time.monotonic() >= deadline:
                current = self.backend.get_lock(deployment_id)
                raise LockTimeout(
                    f"Timed out after {wait}s waiting for lock on {deployment_id}",
                    deployment_id=deployment_id,
                    holder=current.holder if current else None,
                    timeout_seconds=wait,
                )
            time.sleep(self.lock_config.poll_interval)

    def _release(self, held_key: tuple[str, str]) -> None:
        with self._held_mutex:
            depth = self._held.get(held_key, 0) - 1
            if depth > 0:
                self._held[held_key] = depth
                return
            self._held.pop(held_key, None)

        deployment_id, holder = held_key
        self.backend.release_lock(deployment_id, holder)
        logger.debug("Lock released", deployment_id=deployment_id, holder=holder)

    def renew(self, deployment_id: str, holder: str) -> LockInfo:
        """Extend the lease held by ``holder``.

        Raises:
            LockTimeout: If the lease was lost to another holder
        """
        lease = self.backend.try_acquire_lock(deployment_id, holder, self.lock_config.ttl)
        if lease is None:
            current = self.backend.get_lock(deployment_id)
            raise LockTimeout(
                f"Lock on {deployment_id} was taken over",
                deployment_id=deployment_id,
                holder=current.holder if current else None,
            )
        return lease

    def with_lock(
        self,
        deployment_id: str,
        fn: Callable[[], T],
        holder: str | None = None,
        wait_timeout: float | None = None,
    ) -> T:
        """Run ``fn`` while holding the deployment lock."""
        with self.lock(deployment_id, holder=holder, wait_timeout=wait_timeout):
            return fn()
