"""NodeConfig publisher.

The publisher is the only writer of NodeConfig specs. Each publish reads the
stored record, computes a merge patch against the desired spec and writes
only when the patch is non-empty. Publishes for one node are serialized by a
per-node lock; publishes for different nodes proceed independently.
"""

import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from clusterlink.config import ManagerConfig
from clusterlink.exceptions import PublishConflict
from clusterlink.logging_config import get_logger
from clusterlink.models.nodeconfig import NodeConfig, NodeConfigSpec, NodeConfigStatus
from clusterlink.patch import create_merge_patch

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeConfigPublisher:
    """Writes desired NodeConfig specs to a store with minimal patches."""

    def __init__(
        self,
        store,
        config: ManagerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the publisher.

        Args:
            store: NodeConfig store (in-memory or Kubernetes backed)
            config: Retry settings
            clock: Source of ``lastChangeTime`` values
            sleep: Used between retries
        """
        self.store = store
        self.config = config or ManagerConfig()
        self.clock = clock
        self.sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, node_key: str) -> threading.Lock:
        """Ownership lock of one node's NodeConfig."""
        with self._locks_guard:
            if node_key not in self._locks:
                self._locks[node_key] = threading.Lock()
            return self._locks[node_key]

    def publish(self, node_key: str, desired: NodeConfig | NodeConfigSpec) -> bool:
        """Bring the stored NodeConfig of a node in line with ``desired``.

        Returns:
            True if anything was written, False for a no-op

        Raises:
            PublishConflict: Concurrent writes kept winning for every attempt
        """
        spec = desired.spec if isinstance(desired, NodeConfig) else desired
        spec = spec.normalized()
        attempts = self.config.publish_max_attempts

        with self.lock_for(node_key):
            for attempt in range(1, attempts + 1):
                try:
                    return self._publish_once(node_key, spec)
                except PublishConflict as e:
                    if attempt == attempts:
                        logger.error(f"Giving up on NodeConfig '{node_key}' after {attempts} attempts")
                        raise PublishConflict(
                            f"NodeConfig '{node_key}' could not be published after {attempts} attempts",
                            details=e.message,
                        ) from e
                    delay = self.config.publish_backoff_seconds * 2 ** (attempt - 1)
                    logger.debug(f"Conflict publishing '{node_key}' (attempt {attempt}), retrying in {delay:.2f}s")
                    self.sleep(delay)
        return False

    def _publish_once(self, node_key: str, spec: NodeConfigSpec) -> bool:
        current = self.store.get(node_key)
        if current is None:
            now = self.clock()
            self.store.create(
                NodeConfig(
                    name=node_key,
                    spec=spec,
                    status=NodeConfigStatus(last_change_time=now),
                    spec_changed_at=now,
                )
            )
            logger.info(f"Created NodeConfig '{node_key}'")
            return True

        patch = create_merge_patch(current.spec.to_dict(), spec.to_dict())
        if not patch:
            if current.status_lags_spec:
                self.store.set_change_time(node_key, current.spec_changed_at)
                logger.info(f"Repaired lastChangeTime of NodeConfig '{node_key}'")
                return True
            logger.debug(f"NodeConfig '{node_key}' is up to date")
            return False

        self.store.patch(node_key, patch, self.clock(), current.resource_version)
        logger.info(f"Patched NodeConfig '{node_key}' ({', '.join(sorted(patch))})")
        return True

    def delete(self, node_key: str) -> bool:
        """Remove the NodeConfig of a node that left the inventory, and its lock."""
        with self.lock_for(node_key):
            deleted = self.store.delete(node_key)
            with self._locks_guard:
                self._locks.pop(node_key, None)
        if deleted:
            logger.info(f"Deleted NodeConfig '{node_key}'")
        return deleted
