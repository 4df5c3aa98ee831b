"""Reconciliation loop.

A pass reads the inventory, compiles the topology against the authoritative
allocation table, publishes the NodeConfigs that changed, deletes those of
departed nodes and reports the sync state of every node.

Inventory events are coalesced: :meth:`Reconciler.notify` only records that
something changed, and :meth:`Reconciler.run` starts a pass once the debounce
window has passed quietly or enough events have piled up. Every notification
bumps a generation counter; a pass that sees a newer generation before it
publishes is discarded in favor of the next one.
"""

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from clusterlink.config import ManagerConfig
from clusterlink.exceptions import AllocationConflict, ClusterLinkError
from clusterlink.logging_config import get_logger
from clusterlink.models.cluster import ClusterCondition
from clusterlink.models.nodeconfig import NodeConfig
from clusterlink.publisher import NodeConfigPublisher, utcnow
from clusterlink.topology import CompileResult, TopologyCompiler

logger = get_logger(__name__)

CONDITION_TOPOLOGY_READY = "TopologyReady"


class NodeSyncState(str, Enum):
    """Where a node's NodeConfig stands in the delivery protocol."""

    PENDING = "Pending"
    PUBLISHED = "Published"
    SYNCED = "Synced"
    STALE = "Stale"


def sync_state(config: NodeConfig | None, now: datetime, grace_period: float) -> NodeSyncState:
    """Derive a node's state from a single snapshot of its status timestamps.

    A spec write whose status write never landed counts as the last change.
    """
    if config is None:
        return NodeSyncState.PENDING
    _, last_sync = config.status.snapshot()
    last_change = config.change_time()
    if last_sync is not None and (last_change is None or last_sync >= last_change):
        return NodeSyncState.SYNCED
    if last_change is not None and now - last_change > timedelta(seconds=grace_period):
        return NodeSyncState.STALE
    return NodeSyncState.PUBLISHED


@dataclass
class PassReport:
    """What one reconciliation pass did."""

    generation: int
    discarded: bool = False
    full: bool = False
    published: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cluster_errors: dict[str, str] = field(default_factory=dict)
    states: dict[str, NodeSyncState] = field(default_factory=dict)

    @property
    def stale(self) -> list[str]:
        return sorted(k for k, s in self.states.items() if s is NodeSyncState.STALE)


class Reconciler:
    """Drives compile, publish and status collection for one inventory."""

    def __init__(
        self,
        inventory,
        node_configs,
        allocations,
        config: ManagerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the reconciler.

        Args:
            inventory: Source of clusters and nodes, and sink for cluster conditions
            node_configs: NodeConfig store
            allocations: Allocation table store
            config: Manager configuration
            clock: Wall clock used for timestamps and staleness
            sleep: Used between publish retries
        """
        self.inventory = inventory
        self.node_configs = node_configs
        self.allocations = allocations
        self.config = config or ManagerConfig()
        self.clock = clock
        self.compiler = TopologyCompiler(self.config)
        self.publisher = NodeConfigPublisher(node_configs, self.config, clock=clock, sleep=sleep)

        self._cond = threading.Condition()
        self._generation = 0
        self._pending_events = 0
        self._last_event = 0.0
        self._published: dict[str, str] = {}
        self._passes = 0
        self.last_report: PassReport | None = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    def notify(self, reason: str = "") -> None:
        """Record an inventory change; the next pass picks it up."""
        with self._cond:
            self._generation += 1
            self._pending_events += 1
            self._last_event = time.monotonic()
            self._cond.notify_all()
        if reason:
            logger.debug(f"Inventory event: {reason}")

    def wait_for_batch(self, stop_event: threading.Event, deadline: float) -> bool:
        """Block until a batch of events is ready, ``deadline`` passes or ``stop_event`` is set.

        Returns:
            True when a batch of events is ready
        """
        with self._cond:
            while not stop_event.is_set():
                now = time.monotonic()
                if self._pending_events:
                    quiet = now - self._last_event >= self.config.debounce_seconds
                    if quiet or self._pending_events >= self.config.max_batch_events:
                        return True
                    timeout = self._last_event + self.config.debounce_seconds - now
                else:
                    timeout = deadline - now
                if now >= deadline and not self._pending_events:
                    return False
                self._cond.wait(timeout=min(max(timeout, 0.01), 1.0))
        return False

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    def _compile(self, clusters, nodes):
        """Compile and persist the allocation table, retrying lost races."""
        attempts = self.config.publish_max_attempts
        for attempt in range(1, attempts + 1):
            table = self.allocations.load()
            result = self.compiler.compile(clusters, nodes, table=table)
            if result.table.version == table.version:
                return table, result
            try:
                self.allocations.save(result.table, table.version)
                return table, result
            except AllocationConflict as e:
                if attempt == attempts:
                    raise
                logger.warning(f"{e.message}; compiling again")
        raise AllocationConflict("Allocation table could not be saved")

    def reconcile(self, full: bool = False) -> PassReport:
        """Run one pass.

        Args:
            full: Publish every NodeConfig, not only those whose desired spec changed

        Returns:
            PassReport describing the pass
        """
        with self._cond:
            generation = self._generation
            self._pending_events = 0

        report = PassReport(generation=generation)
        clusters = self.inventory.get_clusters()
        nodes = self.inventory.get_nodes()
        previous_table, result = self._compile(clusters, nodes)

        if self.generation != generation:
            logger.info(f"Discarding pass {generation}: inventory changed while compiling")
            report.discarded = True
            self.last_report = report
            return report

        moved = result.table.changed_blocks(previous_table)
        if moved:
            logger.warning(f"Address blocks of {', '.join(sorted(moved))} moved; republishing everything")
        report.full = full or bool(moved) or self._passes == 0
        report.cluster_errors = {name: e.message for name, e in sorted(result.errors.items())}

        self._publish(result, report)
        self._delete_departed(result, nodes, report)
        self._update_conditions(clusters, result)
        self._collect_states(result, report)

        self._passes += 1
        self.last_report = report
        logger.info(
            f"Pass {generation}: {len(report.published)} published, {len(report.unchanged)} unchanged, "
            f"{len(report.deleted)} deleted, {len(report.failed)} failed, {len(report.stale)} stale"
        )
        return report

    def _publish(self, result: CompileResult, report: PassReport) -> None:
        pending = {}
        for key, config in sorted(result.configs.items()):
            desired = config.spec_json()
            if report.full or self._published.get(key) != desired:
                pending[key] = (config, desired)
            else:
                report.unchanged.append(key)
        if not pending:
            return

        with ThreadPoolExecutor(max_workers=self.config.publish_workers) as executor:
            futures = {key: executor.submit(self.publisher.publish, key, config) for key, (config, _) in pending.items()}
            for key in sorted(futures):
                try:
                    written = futures[key].result()
                except ClusterLinkError as e:
                    logger.error(f"Failed to publish NodeConfig '{key}': {e.message}")
                    report.failed[key] = e.message
                    self._published.pop(key, None)
                    continue
                self._published[key] = pending[key][1]
                if written:
                    report.published.append(key)
                else:
                    report.unchanged.append(key)
        report.unchanged.sort()

    def _delete_departed(self, result: CompileResult, nodes, report: PassReport) -> None:
        protected = {n.key for n in nodes if n.cluster_name in result.errors}
        for existing in self.node_configs.list():
            name = existing.name
            if name in result.configs or name in protected:
                continue
            try:
                if self.publisher.delete(name):
                    report.deleted.append(name)
            except ClusterLinkError as e:
                logger.error(f"Failed to delete NodeConfig '{name}': {e.message}")
                report.failed[name] = e.message
            self._published.pop(name, None)

    def _update_conditions(self, clusters, result: CompileResult) -> None:
        for cluster in clusters:
            error = result.errors.get(cluster.name)
            if error is None:
                condition = ClusterCondition(
                    type=CONDITION_TOPOLOGY_READY,
                    status="True",
                    reason="Compiled",
                    message="Topology compiled",
                    last_transition_time=self.clock(),
                )
            else:
                condition = ClusterCondition(
                    type=CONDITION_TOPOLOGY_READY,
                    status="False",
                    reason=type(error).__name__,
                    message=error.message,
                    last_transition_time=self.clock(),
                )
            status = cluster.status.model_copy(deep=True)
            if not status.set_condition(condition):
                continue
            try:
                self.inventory.set_condition(cluster.name, status.condition(CONDITION_TOPOLOGY_READY))
            except ClusterLinkError as e:
                logger.error(f"Failed to update condition of cluster '{cluster.name}': {e.message}")

    def _collect_states(self, result: CompileResult, report: PassReport) -> None:
        stored = {c.name: c for c in self.node_configs.list()}
        now = self.clock()
        for key in sorted(result.configs):
            state = sync_state(stored.get(key), now, self.config.stale_grace_period)
            report.states[key] = state
            if state is NodeSyncState.STALE:
                logger.warning(f"NodeConfig '{key}' has not been applied by its agent")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def run(self, stop_event: threading.Event) -> None:
        """Reconcile until ``stop_event`` is set."""
        logger.info("Reconciler started")
        next_resync = 0.0
        while not stop_event.is_set():
            now = time.monotonic()
            full = now >= next_resync
            if not full and not self.wait_for_batch(stop_event, next_resync):
                continue
            try:
                self.reconcile(full=full)
            except ClusterLinkError as e:
                logger.error(f"Reconciliation pass failed: {e.message}")
            if full:
                next_resync = time.monotonic() + self.config.reconcile_interval
        logger.info("Reconciler stopped")
