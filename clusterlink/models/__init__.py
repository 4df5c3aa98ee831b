"""Data models for clusters, nodes and per-node network configuration."""

from clusterlink.models.cluster import (
    CIDRPair,
    Cluster,
    ClusterCondition,
    ClusterStatus,
    IPFamily,
    NetworkType,
    NICNodeNames,
)
from clusterlink.models.node import ClusterNode
from clusterlink.models.nodeconfig import (
    Arp,
    Device,
    Fdb,
    IPTablesRule,
    NodeConfig,
    NodeConfigSpec,
    NodeConfigStatus,
    Route,
)

__all__ = [
    "Arp",
    "CIDRPair",
    "Cluster",
    "ClusterCondition",
    "ClusterNode",
    "ClusterStatus",
    "Device",
    "Fdb",
    "IPFamily",
    "IPTablesRule",
    "NetworkType",
    "NICNodeNames",
    "NodeConfig",
    "NodeConfigSpec",
    "NodeConfigStatus",
    "Route",
]
