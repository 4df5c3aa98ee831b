"""Unit tests for the cluster, node and NodeConfig models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from clusterlink.models.cluster import Cluster, ClusterCondition, ClusterStatus, IPFamily, NetworkType
from clusterlink.models.node import ClusterNode
from clusterlink.models.nodeconfig import (
    SPEC_CHANGED_ANNOTATION,
    Arp,
    Device,
    Fdb,
    IPTablesRule,
    NodeConfig,
    NodeConfigSpec,
    NodeConfigStatus,
    Route,
)


class TestCluster:
    def test_defaults(self):
        cluster = Cluster(name="east")

        assert cluster.network_type is NetworkType.P2P
        assert cluster.ip_family is IPFamily.ALL
        assert cluster.local_cidrs.ip == "210.0.0.0/8"
        assert cluster.local_cidrs.ip6 == "9480::/16"
        assert cluster.bridge_cidrs.ip == "220.0.0.0/8"
        assert cluster.bridge_cidrs.ip6 == "9470::/16"
        assert cluster.namespace == "clusterlink-system"
        assert cluster.use_ip_pool is False

    def test_camel_case_aliases(self):
        cluster = Cluster(
            name="east",
            networkType="gateway",
            ipFamily="ipv6",
            bridgeCIDRs={"ip": "230.0.0.0/8", "ip6": "9460::/16"},
            useIPPool=True,
        )

        assert cluster.network_type is NetworkType.GATEWAY
        assert cluster.ip_family.families() == (6,)
        assert cluster.pool_base("bridge", 4) == "230.0.0.0/8"
        assert cluster.use_ip_pool is True

    @pytest.mark.parametrize("name", ["", "East", "east_1", "-east", "a" * 64])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            Cluster(name=name)

    def test_invalid_cidr_rejected(self):
        with pytest.raises(ValidationError):
            Cluster(name="east", localCIDRs={"ip": "210.0.0.1/8", "ip6": "9480::/16"})
        with pytest.raises(ValidationError):
            Cluster(name="east", localCIDRs={"ip": "9480::/16", "ip6": "9480::/16"})

    def test_families(self):
        assert IPFamily.ALL.families() == (4, 6)
        assert IPFamily.IPV4.families() == (4,)

    def test_interface_resolution(self):
        cluster = Cluster(
            name="east",
            defaultNICName="ens3",
            nicNodeNames=[{"interfaceName": "bond0", "nodeName": ["e1", "e2"]}],
        )

        assert cluster.interface_for("e1") == "bond0"
        assert cluster.interface_for("e3") == "ens3"
        assert Cluster(name="east").interface_for("e1") is None

    def test_resource_round_trip(self):
        cluster = Cluster(
            name="east",
            globalCIDRsMap={"east": "210.9.0.0/16"},
            status=ClusterStatus(pod_cidrs=["10.1.0.0/16"]),
        )

        resource = cluster.to_resource()

        assert resource["kind"] == "Cluster"
        assert resource["spec"]["globalCIDRsMap"] == {"east": "210.9.0.0/16"}
        assert "imageRepository" not in resource["spec"]
        assert Cluster.from_resource(resource) == cluster

    def test_inventory_dict_omits_defaults(self):
        cluster = Cluster(name="east", networkType="gateway")

        data = cluster.to_inventory_dict()

        assert data == {"networkType": "gateway"}
        assert Cluster.from_inventory_dict("east", data) == cluster


class TestClusterStatus:
    def test_set_condition_reports_changes(self):
        status = ClusterStatus()
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert status.set_condition(ClusterCondition(type="Ready", status="True", last_transition_time=first))
        assert not status.set_condition(ClusterCondition(type="Ready", status="True"))
        assert status.condition("Ready").last_transition_time == first

    def test_transition_time_kept_when_status_unchanged(self):
        status = ClusterStatus()
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        later = datetime(2024, 1, 2, tzinfo=timezone.utc)
        status.set_condition(ClusterCondition(type="Ready", status="False", message="x", last_transition_time=first))

        assert status.set_condition(
            ClusterCondition(type="Ready", status="False", message="y", last_transition_time=later)
        )
        assert status.condition("Ready").message == "y"
        assert status.condition("Ready").last_transition_time == first

        status.set_condition(ClusterCondition(type="Ready", status="True", last_transition_time=later))
        assert status.condition("Ready").last_transition_time == later
        assert len(status.conditions) == 1


class TestClusterNode:
    def test_key_and_roles(self):
        node = ClusterNode(cluster_name="east", node_name="e1", roles=["worker", "gateway", "worker"])

        assert node.key == "east-e1"
        assert node.roles == ["gateway", "worker"]
        assert node.is_gateway

    def test_address_families_validated(self):
        with pytest.raises(ValidationError):
            ClusterNode(cluster_name="east", node_name="e1", ip="fd00::1")
        with pytest.raises(ValidationError):
            ClusterNode(cluster_name="east", node_name="e1", ip6="10.0.0.1")

    def test_ip6_normalized(self):
        node = ClusterNode(cluster_name="east", node_name="e1", ip6="FD00:0:0::1")

        assert node.ip6 == "fd00::1"
        assert node.address(6) == "fd00::1"
        assert node.address(4) == ""

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError):
            ClusterNode(cluster_name="east", node_name="e1", roles=["router"])

    def test_inventory_round_trip(self):
        node = ClusterNode(
            cluster_name="east",
            node_name="e1",
            roles=["gateway"],
            interface_name="eth0",
            ip="192.168.1.10",
            pod_cidrs=["10.1.1.0/24"],
        )

        data = node.to_inventory_dict()

        assert data["podCIDRs"] == ["10.1.1.0/24"]
        assert "ip6" not in data
        assert ClusterNode.from_inventory_dict("east", "e1", data) == node

    def test_resource_uses_key_as_name(self):
        node = ClusterNode(cluster_name="east", node_name="e1", ip="192.168.1.10")

        resource = node.to_resource()

        assert resource["metadata"]["name"] == "east-e1"
        assert resource["spec"]["clusterName"] == "east"
        assert ClusterNode.from_resource(resource) == node


class TestNodeConfigSpec:
    def _device(self, name="vxb-1", mac="02:00:00:00:00:01"):
        return Device(id=1001, name=name, mac=mac, bind_dev="eth0", addr="220.1.0.10/32", port=4876)

    def test_normalized_sorts_and_deduplicates(self):
        spec = NodeConfigSpec(
            routes=[
                Route(cidr="10.2.0.0/16", dev="vxb-1", gw="220.2.0.20"),
                Route(cidr="10.1.0.0/16", dev="vxb-1", gw="220.2.0.20"),
                Route(cidr="10.2.0.0/16", dev="vxb-1", gw="220.2.0.20"),
            ],
            iptables=[
                IPTablesRule(table="nat", chain="POSTROUTING", rule="-o vxb-1 -j RETURN"),
                IPTablesRule(table="filter", chain="FORWARD", rule="-i vxb-1 -j ACCEPT"),
            ],
        )

        normalized = spec.normalized()

        assert [r.cidr for r in normalized.routes] == ["10.1.0.0/16", "10.2.0.0/16"]
        assert [t.table for t in normalized.iptables] == ["filter", "nat"]

    def test_duplicate_keys(self):
        spec = NodeConfigSpec(
            devices=[self._device(), self._device(mac="02:00:00:00:00:02")],
            routes=[
                Route(cidr="10.2.0.0/16", dev="vxb-1", gw="220.2.0.20"),
                Route(cidr="10.2.0.0/16", dev="vxb-2", gw="220.3.0.20"),
            ],
            fdbs=[Fdb(dev="vxb-1", ip="192.168.2.20", mac="02:00:00:00:00:03")],
            arps=[Arp(dev="vxb-1", ip="220.2.0.20", mac="02:00:00:00:00:03")],
        )

        problems = spec.duplicate_keys()

        assert problems == ["device vxb-1", "route 10.2.0.0/16"]

    def test_to_dict_uses_wire_names(self):
        spec = NodeConfigSpec(devices=[self._device()])

        data = spec.to_dict()

        assert data["devices"][0]["bindDev"] == "eth0"
        assert data["devices"][0]["type"] == "vxlan"


class TestNodeConfig:
    def test_resource_round_trip(self):
        changed = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        config = NodeConfig(
            name="east-e1",
            spec=NodeConfigSpec(routes=[Route(cidr="10.2.0.0/16", dev="vxb-1", gw="220.2.0.20")]),
            status=NodeConfigStatus(last_change_time=changed),
            resource_version="7",
        )

        resource = config.to_resource()

        assert resource["metadata"] == {"name": "east-e1", "resourceVersion": "7"}
        assert resource["status"] == {"lastChangeTime": "2024-01-01T12:00:00Z"}
        assert NodeConfig.from_resource(resource) == config

    def test_spec_change_annotation(self):
        written = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        config = NodeConfig(name="east-e1", spec_changed_at=written)

        resource = config.to_resource()
        parsed = NodeConfig.from_resource(resource)

        assert resource["metadata"]["annotations"] == {SPEC_CHANGED_ANNOTATION: "2024-01-01T12:00:00+00:00"}
        assert parsed.spec_changed_at == written
        assert parsed.status_lags_spec
        assert parsed.change_time() == written

    def test_status_caught_up_with_spec(self):
        written = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        config = NodeConfig(
            name="east-e1", spec_changed_at=written, status=NodeConfigStatus(last_change_time=written)
        )

        assert not config.status_lags_spec
        assert config.change_time() == written
        assert not NodeConfig(name="east-e1").status_lags_spec

    def test_status_snapshot(self):
        changed = datetime(2024, 1, 1, tzinfo=timezone.utc)
        synced = datetime(2024, 1, 2, tzinfo=timezone.utc)

        status = NodeConfigStatus(lastChangeTime=changed, lastSyncTime=synced)

        assert status.snapshot() == (changed, synced)
