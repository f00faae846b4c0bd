"""Deployment audit logging."""

import getpass
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from edgedeploy.core.logging import StructuredLogger
from edgedeploy.state.models import DeploymentResult, utcnow

logger = StructuredLogger(__name__)


class DeploymentAuditLogger:
    """Log deployment events for audit purposes."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        max_logs: int = 1000,
    ):
        """Initialize audit logger.

        Args:
            log_dir: Directory to store audit logs, log-only if omitted
            max_logs: Maximum number of entries to retain
        """
        if log_dir:
            self._log_dir = Path(log_dir).expanduser()
            self._log_dir.mkdir(parents=True, exist_ok=True)
        else:
            self._log_dir = None

        self._max_logs = max_logs

    @property
    def log_dir(self) -> Path | None:
        return self._log_dir

    def log_event(
        self,
        deployment_id: str,
        event: str,
        data: dict[str, Any] | None = None,
        user: str | None = None,
    ) -> str:
        """Log a deployment event.

        Args:
            deployment_id: Deployment the event belongs to
            event: Event name, e.g. ``completed`` or ``recovered``
            data: JSON-safe event payload
            user: Acting user, defaults to the login name

        Returns:
            Audit entry ID
        """
        now = utcnow()
        audit_id = f"{now.strftime('%Y%m%d_%H%M%S_%f')}_{deployment_id}_{event}"

        entry = {
            "audit_id": audit_id,
            "timestamp": now.isoformat(),
            "user": user or _current_user(),
            "deployment_id": deployment_id,
            "event": event,
            "status": (data or {}).get("status"),
            "data": data or {},
        }

        if self._log_dir:
            self._write_entry(audit_id, entry)

        logger.info(
            "Deployment audit",
            audit_id=audit_id,
            deployment_id=deployment_id,
            audit_event=event,
        )
        return audit_id

    def log_result(
        self,
        result: DeploymentResult,
        user: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a deployment's terminal result."""
        data = result.to_dict()
        data["metadata"] = metadata or {}
        return self.log_event(result.deployment_id, "completed", data, user=user)

    def _write_entry(self, audit_id: str, entry: dict[str, Any]) -> None:
        entry_file = self._log_dir / f"{audit_id}.json"
        with open(entry_file, "w") as f:
            json.dump(entry, f, indent=2, default=str)

        self._cleanup_old_logs()

    def _cleanup_old_logs(self) -> None:
        """Remove old audit entries beyond max_logs limit."""
        if not self._log_dir:
            return

        entry_files = sorted(self._log_dir.glob("*.json"))
        if len(entry_files) > self._max_logs:
            for old_file in entry_files[: -self._max_logs]:
                old_file.unlink(missing_ok=True)

    def _read_entries(self) -> list[dict[str, Any]]:
        entries = []
        for entry_file in sorted(self._log_dir.glob("*.json"), reverse=True):
            try:
                with open(entry_file) as f:
                    entries.append(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning("Failed to read audit entry", path=str(entry_file), error=str(e))
        return entries

    def get_history(
        self,
        deployment_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Get audit history, newest first.

        Args:
            deployment_id: Filter by deployment
            limit: Maximum entries to return
            offset: Skip first N entries
        """
        if not self._log_dir:
            return []

        entries = [
            e for e in self._read_entries()
            if not deployment_id or e.get("deployment_id") == deployment_id
        ]
        return entries[offset : offset + limit]

    def get_entry(self, audit_id: str) -> dict[str, Any] | None:
        """Get one audit entry by ID."""
        if not self._log_dir:
            return None

        entry_file = self._log_dir / f"{audit_id}.json"
        if not entry_file.exists():
            return None

        with open(entry_file) as f:
            return json.load(f)

    def get_stats(self, days: int = 30) -> dict[str, Any]:
        """Terminal outcome counts over the last ``days`` days."""
        if not self._log_dir:
            return {}

        cutoff = utcnow().timestamp() - (days * 86400)
        stats: dict[str, Any] = {
            "total_deployments": 0,
            "successful": 0,
            "failed": 0,
            "rolled_back": 0,
            "partially_rolled_back": 0,
            "scopes": {},
        }

        for entry in self._read_entries():
            if entry.get("event") != "completed":
                continue
            if datetime.fromisoformat(entry["timestamp"]).timestamp() < cutoff:
                continue

            stats["total_deployments"] += 1
            status = entry.get("status")
            if status == "success":
                stats["successful"] += 1
            elif status in ("failed", "rolled_back", "partially_rolled_back"):
                stats[status] += 1

            scope = entry.get("data", {}).get("scope", "unknown")
            scope_stats = stats["scopes"].setdefault(scope, {"runs": 0, "failures": 0})
            scope_stats["runs"] += 1
            if status != "success":
                scope_stats["failures"] += 1

        return stats


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
