"""Storage backends for deployment state.

A backend is a durable keyed byte store with atomic single-key writes,
read-after-write consistency and an exclusive, expiring advisory lock per
deployment. :class:`FileSystemBackend` is the production backend;
:class:`InMemoryBackend` serves tests and embedded use.
"""

import fcntl
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

from edgedeploy.core.exceptions import StateError
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.state.models import LockInfo, utcnow

logger = StructuredLogger(__name__)


class StorageBackend(ABC):
    """Abstract persistence backend."""

    @abstractmethod
    def read(self, key: str) -> bytes | None:
        """Read the value stored under key, or None."""

    @abstractmethod
    def write(self, key: str, data: bytes) -> None:
        """Atomically replace the value stored under key."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with prefix."""

    @abstractmethod
    def try_acquire_lock(self, deployment_id: str, holder: str, ttl: float) -> LockInfo | None:
        """Take or renew the lock if free, expired or already held by holder.

        Returns:
            The lease on success, None if another live holder owns the lock
        """

    @abstractmethod
    def release_lock(self, deployment_id: str, holder: str) -> None:
        """Release the lock if held by holder."""

    @abstractmethod
    def get_lock(self, deployment_id: str) -> LockInfo | None:
        """Current lease, expired or not."""


def _lease(current: LockInfo | None, deployment_id: str, holder: str, ttl: float) -> LockInfo | None:
    """Compute the new lease, or None when a different live holder owns it."""
    now = utcnow()
    if current is not None and current.holder != holder and not current.is_expired(now):
        return None

    acquired_at = current.acquired_at if current is not None and current.holder == holder else now
    return LockInfo(
        deployment_id=deployment_id,
        holder=holder,
        acquired_at=acquired_at,
        expires_at=now + timedelta(seconds=ttl),
    )


class InMemoryBackend(StorageBackend):
    """Process-local backend."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._locks: dict[str, LockInfo] = {}
        self._mutex = threading.Lock()

    def read(self, key: str) -> bytes | None:
        with self._mutex:
            return self._data.get(key)

    def write(self, key: str, data: bytes) -> None:
        with self._mutex:
            self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        with self._mutex:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._mutex:
            return sorted(k for k in self._data if k.startswith(prefix))

    def try_acquire_lock(self, deployment_id: str, holder: str, ttl: float) -> LockInfo | None:
        with self._mutex:
            lease = _lease(self._locks.get(deployment_id), deployment_id, holder, ttl)
            if lease is not None:
                self._locks[deployment_id] = lease
            return lease

    def release_lock(self, deployment_id: str, holder: str) -> None:
        with self._mutex:
            current = self._locks.get(deployment_id)
            if current is not None and current.holder == holder:
                del self._locks[deployment_id]

    def get_lock(self, deployment_id: str) -> LockInfo | None:
        with self._mutex:
            return self._locks.get(deployment_id)


class FileSystemBackend(StorageBackend):
    """Backend storing one file per key under a root directory.

    Writes go to a temporary file in the same directory and are renamed into
    place, so readers never observe a partial write. Lock leases live in
    ``locks/<id>.lock``; reading and replacing a lease is serialized across
    processes by an ``fcntl`` lock on a sidecar guard file.
    """

    LOCK_DIR = "locks"

    def __init__(self, root: str | Path):
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StateError(f"Invalid storage key: {key}")
        return path

    def read(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateError(f"Cannot read {path}: {e}")

    def write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp_handle:
                tmp_handle.write(data)
                tmp_handle.flush()
                os.fsync(tmp_handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(f"{self.LOCK_DIR}/"):
                continue
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _lock_path(self, deployment_id: str) -> Path:
        return self._path(f"{self.LOCK_DIR}/{deployment_id}.lock")

    @contextmanager
    def _guard(self, deployment_id: str) -> Iterator[None]:
        guard_path = self._path(f"{self.LOCK_DIR}/{deployment_id}.guard")
        guard_path.parent.mkdir(parents=True, exist_ok=True)
        with guard_path.open("a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_lease(self, deployment_id: str) -> LockInfo | None:
        try:
            raw = self._lock_path(deployment_id).read_text()
        except FileNotFoundError:
            return None
        try:
            return LockInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable lock lease", deployment_id=deployment_id)
            return None

    def try_acquire_lock(self, deployment_id: str, holder: str, ttl: float) -> LockInfo | None:
        with self._guard(deployment_id):
            lease = _lease(self._read_lease(deployment_id), deployment_id, holder, ttl)
            if lease is not None:
                self.write(
                    f"{self.LOCK_DIR}/{deployment_id}.lock",
                    json.dumps(lease.to_dict()).encode(),
                )
            return lease

    def release_lock(self, deployment_id: str, holder: str) -> None:
        with self._guard(deployment_id):
            current = self._read_lease(deployment_id)
            if current is not None and current.holder == holder:
                self._lock_path(deployment_id).unlink(missing_ok=True)

    def get_lock(self, deployment_id: str) -> LockInfo | None:
        return self._read_lease(deployment_id)
