"""Unit tests for the reconciliation loop."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from clusterlink.config import ManagerConfig
from clusterlink.exceptions import AllocationConflict
from clusterlink.models.nodeconfig import NodeConfig, NodeConfigStatus
from clusterlink.reconciler import CONDITION_TOPOLOGY_READY, NodeSyncState, Reconciler, sync_state
from clusterlink.store import InMemoryAllocationStore, InMemoryNodeConfigStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_reconciler(inventory, clock, store=None, allocations=None, **overrides):
    config = ManagerConfig(**overrides)
    return Reconciler(
        inventory,
        store or InMemoryNodeConfigStore(),
        allocations or InMemoryAllocationStore(),
        config=config,
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture
def inventory(two_clusters, make_inventory):
    clusters, nodes = two_clusters
    return make_inventory(clusters, nodes)


class TestSyncState:
    def test_missing_record_is_pending(self):
        assert sync_state(None, NOW, 90) is NodeSyncState.PENDING

    def test_published_until_grace_period_ends(self):
        config = NodeConfig(name="a-a1", status=NodeConfigStatus(last_change_time=NOW))

        assert sync_state(config, NOW + timedelta(seconds=90), 90) is NodeSyncState.PUBLISHED
        assert sync_state(config, NOW + timedelta(seconds=91), 90) is NodeSyncState.STALE

    def test_sync_at_or_after_change_is_synced(self):
        config = NodeConfig(name="a-a1", status=NodeConfigStatus(last_change_time=NOW, last_sync_time=NOW))

        assert sync_state(config, NOW + timedelta(hours=1), 90) is NodeSyncState.SYNCED

    def test_sync_before_change_is_not_synced(self):
        status = NodeConfigStatus(last_change_time=NOW, last_sync_time=NOW - timedelta(seconds=1))

        assert sync_state(NodeConfig(name="a-a1", status=status), NOW, 90) is NodeSyncState.PUBLISHED


class TestReconcile:
    def test_first_pass_publishes_everything(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        allocations = InMemoryAllocationStore()
        reconciler = make_reconciler(inventory, clock, store=store, allocations=allocations)

        report = reconciler.reconcile()

        assert report.full
        assert report.published == ["a-a1", "b-b1"]
        assert report.states == {"a-a1": NodeSyncState.PUBLISHED, "b-b1": NodeSyncState.PUBLISHED}
        assert [r.cidr for r in store.get("a-a1").spec.routes] == ["10.2.0.0/16"]
        assert allocations.load().version == 1
        assert reconciler.last_report is report

    def test_unchanged_pass_writes_nothing(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store)
        reconciler.reconcile()
        versions = [c.resource_version for c in store.list()]

        report = reconciler.reconcile()

        assert not report.full
        assert report.published == []
        assert report.unchanged == ["a-a1", "b-b1"]
        assert [c.resource_version for c in store.list()] == versions

    def test_full_pass_rewrites_nothing_when_equal(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store)
        reconciler.reconcile()

        report = reconciler.reconcile(full=True)

        assert report.full
        assert report.published == []
        assert report.unchanged == ["a-a1", "b-b1"]

    def test_departed_node_is_deleted(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store)
        reconciler.reconcile()
        inventory.nodes = [n for n in inventory.nodes if n.node_name != "b1"]

        report = reconciler.reconcile()

        assert report.deleted == ["b-b1"]
        assert report.published == ["a-a1"]
        assert store.get("b-b1") is None
        assert store.get("a-a1").spec.routes == []

    def test_sync_and_stale_states(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store)
        reconciler.reconcile()
        store.mark_synced("a-a1", clock.now)
        clock.advance(120)

        report = reconciler.reconcile()

        assert report.states["a-a1"] is NodeSyncState.SYNCED
        assert report.states["b-b1"] is NodeSyncState.STALE
        assert report.stale == ["b-b1"]

    def test_conflict_sets_conditions_and_keeps_configs(self, inventory, clock, make_cluster, make_node):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store)
        reconciler.reconcile()
        before = store.get("a-a1")
        inventory.clusters.append(make_cluster("c", pod_cidrs=["10.1.0.0/24"]))
        inventory.nodes.append(make_node("c", "c1", ip="192.168.3.30"))

        report = reconciler.reconcile()

        assert set(report.cluster_errors) == {"a", "c"}
        assert inventory.conditions["a"].status == "False"
        assert inventory.conditions["a"].reason == "TopologyConflict"
        assert inventory.conditions["c"].type == CONDITION_TOPOLOGY_READY
        assert inventory.conditions["b"].status == "True"
        assert inventory.conditions["b"].reason == "Compiled"
        assert store.get("a-a1").spec == before.spec
        assert store.get("c-c1") is None
        assert "a-a1" not in report.deleted
        assert store.get("b-b1").spec.routes == []

    def test_pass_is_discarded_when_inventory_changes(self, two_clusters, make_inventory, clock):
        clusters, nodes = two_clusters
        store = InMemoryNodeConfigStore()

        class ChangingInventory(make_inventory):
            def get_nodes(self):
                reconciler.notify("node added")
                return super().get_nodes()

        reconciler = make_reconciler(ChangingInventory(clusters, nodes), clock, store=store)

        report = reconciler.reconcile()

        assert report.discarded
        assert store.list() == []
        assert reconciler.generation == report.generation + 1

    def test_moved_block_forces_full_pass(self, inventory, clock, make_cluster):
        reconciler = make_reconciler(inventory, clock)
        reconciler.reconcile()
        inventory.clusters[1] = make_cluster(
            "b", pod_cidrs=["10.2.0.0/16"], bridge_cidrs={"ip": "230.0.0.0/8", "ip6": "9470::/16"}
        )

        report = reconciler.reconcile()

        assert report.full
        assert report.published == ["a-a1", "b-b1"]

    def test_lost_allocation_race_is_retried(self, inventory, clock):
        class RacyAllocations(InMemoryAllocationStore):
            saves = 0

            def save(self, table, expected_version):
                self.saves += 1
                if self.saves == 1:
                    raise AllocationConflict("someone else saved first")
                super().save(table, expected_version)

        allocations = RacyAllocations()
        reconciler = make_reconciler(inventory, clock, allocations=allocations)

        report = reconciler.reconcile()

        assert allocations.saves == 2
        assert report.published == ["a-a1", "b-b1"]
        assert allocations.load().version == 1


class TestEventLoop:
    def test_notify_bumps_generation(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock)

        reconciler.notify("cluster added")
        reconciler.notify()

        assert reconciler.generation == 2

    def test_batch_ready_after_quiet_debounce(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock, debounce_seconds=0)
        reconciler.notify()

        assert reconciler.wait_for_batch(threading.Event(), time.monotonic() + 5) is True

    def test_batch_ready_when_enough_events(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock, debounce_seconds=60, max_batch_events=3)
        for _ in range(3):
            reconciler.notify()

        assert reconciler.wait_for_batch(threading.Event(), time.monotonic() + 5) is True

    def test_no_events_until_deadline(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock)

        assert reconciler.wait_for_batch(threading.Event(), time.monotonic()) is False

    def test_stop_event_ends_wait(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock)
        stop = threading.Event()
        stop.set()

        assert reconciler.wait_for_batch(stop, time.monotonic() + 60) is False

    def test_reconcile_clears_pending_events(self, inventory, clock):
        reconciler = make_reconciler(inventory, clock, debounce_seconds=0)
        reconciler.notify()
        reconciler.reconcile()

        assert reconciler.wait_for_batch(threading.Event(), time.monotonic()) is False

    def test_run_until_stopped(self, inventory, clock):
        store = InMemoryNodeConfigStore()
        reconciler = make_reconciler(inventory, clock, store=store, debounce_seconds=0)
        stop = threading.Event()
        worker = threading.Thread(target=reconciler.run, args=(stop,), daemon=True)
        worker.start()

        deadline = time.monotonic() + 5
        while reconciler.last_report is None and time.monotonic() < deadline:
            time.sleep(0.01)
        stop.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert [c.name for c in store.list()] == ["a-a1", "b-b1"]
