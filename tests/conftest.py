"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import Verbosity, settings

from clusterlink.models.cluster import Cluster, ClusterStatus
from clusterlink.models.node import ClusterNode

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal, deadline=None)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose, deadline=None)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose, deadline=None)

# Load the default profile
settings.load_profile("default")


def build_cluster(name, pod_cidrs=(), service_cidrs=(), **kwargs):
    """Cluster with discovered CIDRs, IPv4 only unless told otherwise."""
    kwargs.setdefault("ip_family", "ipv4")
    return Cluster(
        name=name,
        status=ClusterStatus(pod_cidrs=list(pod_cidrs), service_cidrs=list(service_cidrs)),
        **kwargs,
    )


def build_node(cluster, name, ip="", pod_cidrs=(), roles=("worker",), interface="eth0", **kwargs):
    return ClusterNode(
        cluster_name=cluster,
        node_name=name,
        ip=ip,
        pod_cidrs=list(pod_cidrs),
        roles=list(roles),
        interface_name=interface,
        **kwargs,
    )


class FakeClock:
    """Controllable wall clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeInventory:
    """In-memory cluster and node source that records condition updates."""

    def __init__(self, clusters=(), nodes=()):
        self.clusters = list(clusters)
        self.nodes = list(nodes)
        self.conditions = {}

    def get_clusters(self):
        return [c.model_copy(deep=True) for c in self.clusters]

    def get_nodes(self):
        return list(self.nodes)

    def set_condition(self, cluster_name, condition):
        self.conditions[cluster_name] = condition
        for cluster in self.clusters:
            if cluster.name == cluster_name:
                cluster.status.set_condition(condition)


@pytest.fixture(scope="session")
def make_cluster():
    """Factory for clusters."""
    return build_cluster


@pytest.fixture(scope="session")
def make_node():
    """Factory for cluster nodes."""
    return build_node


@pytest.fixture(scope="session")
def make_inventory():
    """Factory for in-memory inventories."""
    return FakeInventory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def two_clusters():
    """Two single-node IPv4 p2p clusters with distinct pod CIDRs."""
    clusters = [
        build_cluster("a", pod_cidrs=["10.1.0.0/16"]),
        build_cluster("b", pod_cidrs=["10.2.0.0/16"]),
    ]
    nodes = [
        build_node("a", "a1", ip="192.168.1.10"),
        build_node("b", "b1", ip="192.168.2.20"),
    ]
    return clusters, nodes


@pytest.fixture
def sample_inventory_yaml():
    """Inventory file content with a comment that must survive writes."""
    return (
        "# overlay inventory\n"
        "clusters:\n"
        "  east:\n"
        "    ipFamily: ipv4\n"
        "    status:\n"
        "      podCIDRs:\n"
        "      - 10.1.0.0/16\n"
        "  west:\n"
        "    ipFamily: ipv4\n"
        "    status:\n"
        "      podCIDRs:\n"
        "      - 10.2.0.0/16\n"
        "nodes:\n"
        "  east:\n"
        "    e1:\n"
        "      roles: [worker]\n"
        "      interfaceName: eth0\n"
        "      ip: 192.168.1.10\n"
        "  west:\n"
        "    w1:\n"
        "      roles: [worker]\n"
        "      interfaceName: eth0\n"
        "      ip: 192.168.2.20\n"
    )
