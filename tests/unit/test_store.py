"""Unit tests for the in-memory stores."""

from datetime import datetime, timezone

import pytest

from clusterlink.allocator import AllocationTable
from clusterlink.exceptions import AllocationConflict, PublishConflict
from clusterlink.models.nodeconfig import NodeConfig, NodeConfigSpec, Route
from clusterlink.store import InMemoryAllocationStore, InMemoryNodeConfigStore

CHANGED = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def route_spec(cidr):
    return NodeConfigSpec(routes=[Route(cidr=cidr, dev="vxb-1", gw="220.2.0.20")])


class TestNodeConfigStore:
    def test_create_assigns_version(self):
        store = InMemoryNodeConfigStore()

        created = store.create(NodeConfig(name="a-a1", spec=route_spec("10.2.0.0/16")))

        assert created.resource_version == "1"
        assert store.get("a-a1").spec == route_spec("10.2.0.0/16")
        assert store.get("missing") is None

    def test_create_existing_conflicts(self):
        store = InMemoryNodeConfigStore()
        store.create(NodeConfig(name="a-a1"))

        with pytest.raises(PublishConflict):
            store.create(NodeConfig(name="a-a1"))

    def test_patch_checks_version(self):
        store = InMemoryNodeConfigStore()
        created = store.create(NodeConfig(name="a-a1", spec=route_spec("10.2.0.0/16")))
        patch = {"routes": [{"cidr": "10.3.0.0/16", "dev": "vxb-1", "gw": "220.2.0.20"}]}

        updated = store.patch("a-a1", patch, CHANGED, created.resource_version)

        assert updated.spec.routes[0].cidr == "10.3.0.0/16"
        assert updated.status.last_change_time == CHANGED
        assert updated.spec_changed_at == CHANGED
        assert not updated.status_lags_spec
        with pytest.raises(PublishConflict):
            store.patch("a-a1", patch, CHANGED, created.resource_version)

    def test_patch_missing_record_conflicts(self):
        with pytest.raises(PublishConflict):
            InMemoryNodeConfigStore().patch("a-a1", {}, CHANGED, None)

    def test_mark_synced_keeps_change_time(self):
        store = InMemoryNodeConfigStore()
        created = store.create(NodeConfig(name="a-a1"))
        store.patch("a-a1", {"routes": []}, CHANGED, created.resource_version)
        synced = datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc)

        store.mark_synced("a-a1", synced)

        assert store.get("a-a1").status.snapshot() == (CHANGED, synced)

    def test_set_change_time_leaves_spec_and_sync(self):
        store = InMemoryNodeConfigStore()
        store.create(NodeConfig(name="a-a1", spec=route_spec("10.2.0.0/16")))
        synced = datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
        store.mark_synced("a-a1", synced)

        store.set_change_time("a-a1", CHANGED)

        stored = store.get("a-a1")
        assert stored.status.snapshot() == (CHANGED, synced)
        assert stored.spec == route_spec("10.2.0.0/16")
        with pytest.raises(PublishConflict):
            store.set_change_time("missing", CHANGED)

    def test_list_and_delete(self):
        store = InMemoryNodeConfigStore()
        store.create(NodeConfig(name="b-b1"))
        store.create(NodeConfig(name="a-a1"))

        assert [c.name for c in store.list()] == ["a-a1", "b-b1"]
        assert store.delete("a-a1") is True
        assert store.delete("a-a1") is False
        assert [c.name for c in store.list()] == ["b-b1"]


class TestAllocationStore:
    def test_save_requires_loaded_version(self):
        store = InMemoryAllocationStore()
        table = store.load()
        table.links["a|b"] = 1
        table.version = 1

        store.save(table, expected_version=0)

        assert store.load().links == {"a|b": 1}
        with pytest.raises(AllocationConflict):
            store.save(AllocationTable(version=2), expected_version=0)

    def test_load_returns_a_copy(self):
        store = InMemoryAllocationStore(AllocationTable(version=3))

        table = store.load()
        table.links["a|b"] = 1

        assert store.load().links == {}
        assert store.load().version == 3
