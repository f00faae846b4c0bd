"""Schema versioning and forward migration of persisted deployment state.

Every persisted payload carries an integer ``schema_version``. Loading walks
the registered chain of migrations, one per version gap, until the payload
reaches :data:`CURRENT_SCHEMA_VERSION`. Migrations are pure functions of the
payload: they never consult the clock, the environment or the store.

The phase list is versioned configuration as well. A state records the
``topology_version`` it was created with and carries its own ``phases`` list,
so a deployment started under one topology resumes under the same one even
after the default topology grows.
"""

import copy
from collections.abc import Callable
from typing import Any

from edgedeploy.core.exceptions import UnsupportedVersion
from edgedeploy.core.logging import StructuredLogger
from edgedeploy.state.models import Phase

logger = StructuredLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
CURRENT_TOPOLOGY_VERSION = 1

PHASE_TOPOLOGIES: dict[int, tuple[str, ...]] = {
    1: (
        Phase.ASSESS.value,
        Phase.CONSTRUCT.value,
        Phase.ORCHESTRATE.value,
        Phase.EXECUTE.value,
    ),
}

Migration = Callable[[dict[str, Any]], dict[str, Any]]


def phases_for(topology_version: int = CURRENT_TOPOLOGY_VERSION) -> list[str]:
    """Get the ordered phase list of a topology version."""
    if topology_version not in PHASE_TOPOLOGIES:
        raise UnsupportedVersion(
            f"Unknown phase topology version: {topology_version}",
            version=topology_version,
        )
    return list(PHASE_TOPOLOGIES[topology_version])


class StateVersioning:
    """Registry of schema migrations."""

    def __init__(self, current_version: int = CURRENT_SCHEMA_VERSION):
        self.current_version = current_version
        self._migrations: dict[int, Migration] = {}

    def register(self, from_version: int) -> Callable[[Migration], Migration]:
        """Register the migration taking ``from_version`` to ``from_version + 1``."""

        def decorator(func: Migration) -> Migration:
            if from_version in self._migrations:
                raise ValueError(f"Migration from version {from_version} already registered")
            self._migrations[from_version] = func
            return func

        return decorator

    def version_of(self, payload: dict[str, Any]) -> int:
        """Read the schema version of a payload, failing on anything unusable."""
        version = payload.get("schema_version")
        if isinstance(version, bool) or not isinstance(version, int):
            raise UnsupportedVersion(
                f"State has no usable schema version: {version!r}",
                version=version,
                deployment_id=payload.get("deployment_id"),
            )
        return version

    def migration_path(self, from_version: int) -> list[int]:
        """Versions whose migrations must run, in order."""
        if from_version > self.current_version:
            raise UnsupportedVersion(
                f"State schema version {from_version} is newer than supported "
                f"version {self.current_version}",
                version=from_version,
            )

        path = list(range(from_version, self.current_version))
        missing = [v for v in path if v not in self._migrations]
        if missing:
            raise UnsupportedVersion(
                f"No migration path from schema version {from_version} "
                f"to {self.current_version}",
                version=from_version,
                details={"missing": missing},
            )
        return path

    def needs_migration(self, payload: dict[str, Any]) -> bool:
        return self.version_of(payload) != self.current_version

    def migrate(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Migrate a payload to the current schema version.

        Args:
            payload: Persisted state payload

        Returns:
            A new payload at the current version; the input is not modified

        Raises:
            UnsupportedVersion: If no migration path exists
        """
        version = self.version_of(payload)
        try:
            path = self.migration_path(version)
        except UnsupportedVersion as e:
            e.deployment_id = payload.get("deployment_id")
            raise

        migrated = copy.deepcopy(payload)
        for step in path:
            migrated = self._migrations[step](migrated)
            migrated["schema_version"] = step + 1
            logger.debug(
                "Migrated state",
                deployment_id=migrated.get("deployment_id"),
                to_version=step + 1,
            )
        return migrated


versioning = StateVersioning()


@versioning.register(1)
def _migrate_v1_to_v2(payload: dict[str, Any]) -> dict[str, Any]:
    """Version 1 tracked ``domains``/``domain_states`` and had no topology."""
    payload["targets"] = payload.pop("domains", payload.get("targets", []))

    target_states = {}
    for name, domain_state in payload.pop("domain_states", {}).items():
        target_states[name] = {
            "target": domain_state.get("domain", name),
            "status": domain_state.get("status", "pending"),
            "completed_phases": domain_state.get("phases_completed", []),
            "failed_phase": domain_state.get("failed_phase"),
            "error": domain_state.get("error"),
            "critical_failure": False,
            "results": {},
            "outputs": {},
        }
    payload["target_states"] = target_states

    payload.setdefault("topology_version", 1)
    payload.setdefault("phases", list(PHASE_TOPOLOGIES[1]))
    payload.setdefault("checkpoints", [])
    payload.setdefault("checkpoint_seq", 0)
    return payload
