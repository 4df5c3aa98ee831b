"""In-memory stores for NodeConfigs and the allocation table.

Both stores follow the optimistic concurrency of the Kubernetes API: every
record carries a resource version, and a write made against an outdated
version is rejected with a conflict instead of overwriting a newer record.
"""

import threading
from datetime import datetime

from clusterlink.allocator import AllocationTable
from clusterlink.exceptions import AllocationConflict, PublishConflict
from clusterlink.logging_config import get_logger
from clusterlink.models.nodeconfig import NodeConfig, NodeConfigSpec, NodeConfigStatus
from clusterlink.patch import apply_merge_patch

logger = get_logger(__name__)


class InMemoryNodeConfigStore:
    """NodeConfig records held in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, NodeConfig] = {}
        self._counter = 0

    def _next_version(self) -> str:
        self._counter += 1
        return str(self._counter)

    def get(self, name: str) -> NodeConfig | None:
        with self._lock:
            record = self._records.get(name)
            return record.model_copy(deep=True) if record else None

    def list(self) -> list[NodeConfig]:
        with self._lock:
            return [self._records[name].model_copy(deep=True) for name in sorted(self._records)]

    def create(self, config: NodeConfig) -> NodeConfig:
        with self._lock:
            if config.name in self._records:
                raise PublishConflict(f"NodeConfig '{config.name}' already exists")
            stored = config.model_copy(deep=True)
            stored.resource_version = self._next_version()
            self._records[config.name] = stored
            return stored.model_copy(deep=True)

    def patch(
        self,
        name: str,
        spec_patch: dict,
        last_change_time: datetime,
        resource_version: str | None,
    ) -> NodeConfig:
        """Apply a spec merge patch and set ``lastChangeTime`` in one step.

        Raises:
            PublishConflict: The record is missing or changed since it was read
        """
        with self._lock:
            current = self._records.get(name)
            if current is None:
                raise PublishConflict(f"NodeConfig '{name}' no longer exists")
            if resource_version is not None and current.resource_version != resource_version:
                raise PublishConflict(
                    f"NodeConfig '{name}' changed (version {current.resource_version}, expected {resource_version})"
                )
            spec = apply_merge_patch(current.spec.to_dict(), spec_patch)
            current.spec = NodeConfigSpec(**spec)
            current.spec_changed_at = last_change_time
            current.status = NodeConfigStatus(
                last_change_time=last_change_time, last_sync_time=current.status.last_sync_time
            )
            current.resource_version = self._next_version()
            return current.model_copy(deep=True)

    def set_change_time(self, name: str, last_change_time: datetime) -> None:
        """Write ``lastChangeTime`` alone, leaving the spec untouched.

        Raises:
            PublishConflict: The record is missing
        """
        with self._lock:
            current = self._records.get(name)
            if current is None:
                raise PublishConflict(f"NodeConfig '{name}' no longer exists")
            current.status = NodeConfigStatus(
                last_change_time=last_change_time, last_sync_time=current.status.last_sync_time
            )
            current.resource_version = self._next_version()

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._records.pop(name, None) is not None

    def mark_synced(self, name: str, when: datetime) -> None:
        """Record an agent confirmation, as the node agent would."""
        with self._lock:
            current = self._records[name]
            current.status = NodeConfigStatus(last_change_time=current.status.last_change_time, last_sync_time=when)
            current.resource_version = self._next_version()


class InMemoryAllocationStore:
    """Single authoritative allocation table with version checking."""

    def __init__(self, table: AllocationTable | None = None):
        self._lock = threading.Lock()
        self._table = table if table is not None else AllocationTable()

    def load(self) -> AllocationTable:
        with self._lock:
            return self._table.model_copy(deep=True)

    def save(self, table: AllocationTable, expected_version: int) -> None:
        """Store ``table`` if the stored version is still ``expected_version``.

        Raises:
            AllocationConflict: Another writer saved a newer table first
        """
        with self._lock:
            if self._table.version != expected_version:
                raise AllocationConflict(
                    f"Allocation table is at version {self._table.version}, expected {expected_version}",
                    details="Reload the table and compile again",
                )
            self._table = table.model_copy(deep=True)
            logger.debug(f"Saved allocation table version {table.version}")
