"""Topology compiler.

Turns the inventory of clusters and their nodes into one desired NodeConfig
per node. Compilation is a pure function of its inputs and of the allocation
table it is given: identical input always yields byte-identical output.

Two network models are supported:

- ``p2p``: every schedulable node tunnels directly to the peers of every
  remote cluster. Node-level pod CIDRs route via the node that owns them,
  cluster-level CIDRs via the designated peer of the remote cluster.
- ``gateway``: only gateway nodes take part in the inter-cluster mesh. Other
  nodes get a single route per family toward their designated local gateway
  over a local relay device.

Failures are isolated per cluster. A cluster that cannot be allocated, or
whose CIDRs overlap another cluster's, is left out of the pass together with
every cluster it conflicts with, and the rest compile normally.
"""

import hashlib
import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass, field

from clusterlink.allocator import (
    POOL_BRIDGE,
    POOL_KINDS,
    POOL_LOCAL,
    AllocationTable,
    CIDRAllocator,
    link_key,
)
from clusterlink.config import ManagerConfig
from clusterlink.exceptions import (
    AllocationError,
    ClusterLinkError,
    TopologyConflict,
    ValidationError,
)
from clusterlink.logging_config import get_logger
from clusterlink.models.cluster import Cluster, NetworkType
from clusterlink.models.node import ClusterNode
from clusterlink.models.nodeconfig import (
    Arp,
    Device,
    Fdb,
    IPTablesRule,
    NodeConfig,
    NodeConfigSpec,
    Route,
)

logger = get_logger(__name__)

BRIDGE_DEVICE = "vx-bridge"
LOCAL_DEVICE = "vx-local"
LINK_DEVICE_PREFIX = "vxb"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def encode_base36(value: int) -> str:
    """Encode a non-negative integer in base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    result = ""
    while value:
        result = _BASE36[value % 36] + result
        value //= 36
    return result


def device_name(base: str, family: int) -> str:
    """Name of a fixed device for one family, e.g. ``vx-bridge6``."""
    return base if family == 4 else f"{base}6"


def link_device_name(link: int, family: int) -> str:
    """Name of the per-remote-cluster device for a link id, e.g. ``vxb-1``."""
    prefix = LINK_DEVICE_PREFIX if family == 4 else f"{LINK_DEVICE_PREFIX}6"
    return f"{prefix}-{encode_base36(link)}"


def tunnel_mac(device: str, address) -> str:
    """Locally administered unicast MAC derived from a device name and address."""
    digest = hashlib.sha256(f"{device}/{address}".encode("utf-8")).digest()
    octets = [(digest[0] & 0xFC) | 0x02] + list(digest[1:6])
    return ":".join(f"{b:02x}" for b in octets)


def covering_supernet(networks):
    """Smallest single network containing every network given (one family)."""
    nets = sorted(networks, key=lambda n: (int(n.network_address), n.prefixlen))
    candidate = nets[0]
    while not all(n.subnet_of(candidate) for n in nets):
        candidate = candidate.supernet()
    return candidate


def forward_rules(device: str) -> list[IPTablesRule]:
    """Firewall rules letting traffic through a tunnel device un-masqueraded."""
    return [
        IPTablesRule(table="filter", chain="FORWARD", rule=f"-i {device} -j ACCEPT"),
        IPTablesRule(table="filter", chain="FORWARD", rule=f"-o {device} -j ACCEPT"),
        IPTablesRule(table="nat", chain="POSTROUTING", rule=f"-o {device} -j RETURN"),
    ]


def cluster_cidrs(cluster: Cluster, nodes: Iterable[ClusterNode]) -> list:
    """Every pod and service CIDR a cluster declares, at cluster and node level."""
    cidrs = list(cluster.status.pod_cidrs) + list(cluster.status.service_cidrs)
    for node in nodes:
        cidrs.extend(node.pod_cidrs)
    return sorted({ipaddress.ip_network(c) for c in cidrs}, key=lambda n: (n.version, str(n)))


def find_conflicts(clusters: dict[str, Cluster], members: dict[str, list[ClusterNode]]) -> list[TopologyConflict]:
    """Report every pair of clusters declaring overlapping CIDRs (first overlap per pair)."""
    declared = {name: cluster_cidrs(cluster, members.get(name, [])) for name, cluster in clusters.items()}
    names = sorted(declared)
    conflicts = []
    for i, a in enumerate(names):
        for b in names[i + 1 :]:
            overlap = next(
                (
                    (na, nb)
                    for na in declared[a]
                    for nb in declared[b]
                    if na.version == nb.version and na.overlaps(nb)
                ),
                None,
            )
            if overlap is not None:
                conflicts.append(TopologyConflict((a, b), (str(overlap[0]), str(overlap[1]))))
    return conflicts


@dataclass
class CompileResult:
    """Outcome of one compile pass."""

    configs: dict[str, NodeConfig]
    table: AllocationTable
    errors: dict[str, ClusterLinkError] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed_clusters(self) -> set[str]:
        return set(self.errors)


class _ClusterView:
    """One cluster with its nodes, as seen by a single compile pass."""

    def __init__(self, cluster: Cluster, nodes: list[ClusterNode], table: AllocationTable):
        self.cluster = cluster
        self.name = cluster.name
        self.nodes = sorted(nodes, key=lambda n: n.node_name)
        self.table = table
        self.families = cluster.ip_family.families()
        self.interfaces = {}
        for node in self.nodes:
            interface = node.interface_name or cluster.interface_for(node.node_name)
            if interface:
                self.interfaces[node.node_name] = interface

    @property
    def is_gateway_model(self) -> bool:
        return self.cluster.network_type == NetworkType.GATEWAY

    def schedulable(self, family: int) -> list[ClusterNode]:
        if family not in self.families:
            return []
        return [n for n in self.nodes if n.node_name in self.interfaces and n.address(family)]

    def participants(self, family: int) -> list[ClusterNode]:
        """Nodes exposed to remote clusters for a family."""
        nodes = self.schedulable(family)
        if self.is_gateway_model:
            return [n for n in nodes if n.is_gateway]
        return nodes

    def designated(self, family: int) -> ClusterNode | None:
        """Tie-break peer: gateway role first, else lowest node name."""
        nodes = self.participants(family)
        if not nodes:
            return None
        return min(nodes, key=lambda n: (not n.is_gateway, n.node_name))

    def node_cidrs(self, family: int) -> list[tuple]:
        entries = []
        for node in self.nodes:
            for cidr in node.pod_cidrs:
                network = ipaddress.ip_network(cidr)
                if network.version == family:
                    entries.append((network, node))
        return sorted(entries, key=lambda e: (int(e[0].network_address), e[0].prefixlen))

    def cluster_level_cidrs(self, family: int) -> list:
        networks = {
            ipaddress.ip_network(c)
            for c in list(self.cluster.status.pod_cidrs) + list(self.cluster.status.service_cidrs)
        }
        return sorted(
            (n for n in networks if n.version == family),
            key=lambda n: (int(n.network_address), n.prefixlen),
        )

    def reachable_cidrs(self, family: int) -> list:
        """CIDRs remote clusters can reach, empty when nobody is exposed."""
        if not self.participants(family):
            return []
        networks = {n for n, _ in self.node_cidrs(family)} | set(self.cluster_level_cidrs(family))
        return sorted(networks, key=lambda n: (int(n.network_address), n.prefixlen))

    def address(self, node: ClusterNode, pool_kind: str, family: int):
        return self.table.node_address(node.key, pool_kind, family)


class TopologyCompiler:
    """Compiles cluster and node inventory into per-node NodeConfigs."""

    def __init__(self, config: ManagerConfig | None = None):
        self.config = config or ManagerConfig()

    def compile(
        self,
        clusters: Iterable[Cluster],
        nodes: Iterable[ClusterNode],
        table: AllocationTable | None = None,
        strict: bool = False,
    ) -> CompileResult:
        """Compile the desired NodeConfig of every node of every healthy cluster.

        Args:
            clusters: Registered clusters
            nodes: Nodes of those clusters; nodes of unknown clusters are ignored
            table: Current allocation table, left unmodified
            strict: Raise the first cluster error instead of isolating it

        Returns:
            CompileResult with the configs, the per-cluster errors and the new
            allocation table

        Raises:
            ClusterLinkError: Only when ``strict`` is set and a cluster failed
        """
        errors: dict[str, ClusterLinkError] = {}
        warnings: list[str] = []

        by_name: dict[str, Cluster] = {}
        for cluster in sorted(clusters, key=lambda c: c.name):
            if cluster.name in by_name:
                errors[cluster.name] = ValidationError(f"Cluster '{cluster.name}' is registered more than once")
                continue
            by_name[cluster.name] = cluster

        members = self._group_nodes(by_name, nodes, errors)
        known_nodes = [n for name in sorted(members) for n in members[name]]

        allocator = CIDRAllocator(self.config, table)
        allocator.release_absent(by_name.values(), known_nodes)
        errors.update(allocator.allocate_clusters([c for name, c in by_name.items() if name not in errors]))

        for conflict in find_conflicts(by_name, members):
            logger.error(conflict.message)
            for name in conflict.clusters:
                errors.setdefault(name, conflict)

        views: dict[str, _ClusterView] = {}
        for name, cluster in by_name.items():
            if name in errors:
                continue
            view = _ClusterView(cluster, members[name], allocator.table)
            try:
                self._assign_addresses(allocator, view)
            except AllocationError as e:
                logger.error(f"Address assignment failed for cluster '{name}': {e.message}")
                errors[name] = e
                continue
            views[name] = view

        links: dict[str, int] = {}
        if not self.config.share_bridge_device:
            names = sorted(views)
            for i, a in enumerate(names):
                for b in names[i + 1 :]:
                    if set(views[a].families) & set(views[b].families):
                        links[link_key(a, b)] = allocator.link_id(a, b)

        configs: dict[str, NodeConfig] = {}
        for name in sorted(views):
            view = views[name]
            for family in view.families:
                if view.is_gateway_model and not view.participants(family) and view.schedulable(family):
                    warnings.append(
                        f"Cluster '{name}' uses the gateway model but has no schedulable "
                        f"IPv{family} gateway node"
                    )
            for node in view.nodes:
                if node.node_name not in view.interfaces:
                    warnings.append(f"Node '{node.key}' has no network interface and gets an empty config")
                spec = self._node_spec(view, node, views, links)
                duplicates = spec.duplicate_keys()
                if duplicates:
                    warnings.append(f"Node '{node.key}' has conflicting entries: {', '.join(duplicates)}")
                    spec = _drop_duplicates(spec)
                configs[node.key] = NodeConfig(name=node.key, spec=spec)

        for message in warnings:
            logger.warning(message)
        result = CompileResult(configs=configs, table=allocator.finish(), errors=errors, warnings=warnings)
        logger.info(
            f"Compiled {len(configs)} NodeConfigs for {len(views)} clusters "
            f"({len(errors)} failed, allocation version {result.table.version})"
        )
        if strict and errors:
            raise errors[sorted(errors)[0]]
        return result

    def _group_nodes(self, clusters: dict[str, Cluster], nodes, errors) -> dict[str, list[ClusterNode]]:
        members: dict[str, list[ClusterNode]] = {name: [] for name in clusters}
        owners: dict[str, str] = {}
        for node in sorted(nodes, key=lambda n: (n.cluster_name, n.node_name)):
            if node.cluster_name not in members:
                logger.debug(f"Ignoring node '{node.node_name}' of unknown cluster '{node.cluster_name}'")
                continue
            owner = owners.get(node.key)
            if owner is not None:
                if owner == node.cluster_name:
                    message = f"Node '{node.node_name}' appears more than once in cluster '{node.cluster_name}'"
                else:
                    message = f"Node key '{node.key}' is used by clusters '{owner}' and '{node.cluster_name}'"
                errors.setdefault(node.cluster_name, ValidationError(message))
                continue
            owners[node.key] = node.cluster_name
            members[node.cluster_name].append(node)
        return members

    def _assign_addresses(self, allocator: CIDRAllocator, view: _ClusterView) -> None:
        for family in view.families:
            for node in view.schedulable(family):
                for pool_kind in POOL_KINDS:
                    allocator.assign_node(view.cluster, node, family, pool_kind)

    # ------------------------------------------------------------------
    # Per-node specs
    # ------------------------------------------------------------------
    def _node_spec(
        self,
        view: _ClusterView,
        node: ClusterNode,
        views: dict[str, _ClusterView],
        links: dict[str, int],
    ) -> NodeConfigSpec:
        spec = NodeConfigSpec()
        for family in view.families:
            if node not in view.schedulable(family):
                continue
            remotes = [
                views[name]
                for name in sorted(views)
                if name != view.name and family in views[name].families
            ]
            if node in view.participants(family):
                for remote in remotes:
                    self._add_mesh(spec, view, node, remote, family, links)
                if view.is_gateway_model and node == view.designated(family):
                    self._add_relay_hub(spec, view, node, remotes, family)
            elif view.is_gateway_model:
                self._add_relay_spoke(spec, view, node, remotes, family)
        return spec.normalized()

    def _bridge_device(self, view: _ClusterView, remote: _ClusterView, family: int, links) -> tuple[str, int]:
        if self.config.share_bridge_device:
            vni = self.config.bridge_vni if family == 4 else self.config.bridge_vni6
            return device_name(BRIDGE_DEVICE, family), vni
        link = links[link_key(view.name, remote.name)]
        base = self.config.link_vni_base if family == 4 else self.config.link_vni_base6
        return link_device_name(link, family), base + link

    def _add_device(self, spec: NodeConfigSpec, view, node, name: str, vni: int, pool_kind: str, family: int, port: int, prefix: int) -> None:
        address = view.address(node, pool_kind, family)
        spec.devices.append(
            Device(
                id=vni,
                name=name,
                mac=tunnel_mac(name, address),
                bind_dev=view.interfaces[node.node_name],
                addr=f"{address}/{prefix}",
                port=port,
            )
        )
        spec.iptables.extend(forward_rules(name))

    def _add_neighbor(self, spec: NodeConfigSpec, dev: str, peer_view, peer: ClusterNode, pool_kind: str, family: int) -> None:
        address = peer_view.address(peer, pool_kind, family)
        mac = tunnel_mac(dev, address)
        spec.fdbs.append(Fdb(dev=dev, ip=peer.address(family), mac=mac))
        spec.arps.append(Arp(dev=dev, ip=str(address), mac=mac))

    def _add_mesh(self, spec, view, node, remote: _ClusterView, family: int, links) -> None:
        """Routes, FDB and ARP entries from one exposed node toward one remote cluster."""
        designated = remote.designated(family)
        if designated is None:
            return
        participants = remote.participants(family)
        dev, vni = self._bridge_device(view, remote, family, links)

        routes: dict = {}
        for network, owner in remote.node_cidrs(family):
            if network in routes:
                continue
            use_owner = not remote.is_gateway_model and owner in participants
            routes[network] = owner if use_owner else designated
        for network in remote.cluster_level_cidrs(family):
            routes.setdefault(network, designated)
        if not routes:
            return

        if self.config.share_bridge_device:
            prefix = ipaddress.ip_network(view.cluster.pool_base(POOL_BRIDGE, family)).prefixlen
        else:
            prefix = 32 if family == 4 else 128
        self._add_device(spec, view, node, dev, vni, POOL_BRIDGE, family, self.config.bridge_port, prefix)

        peers = {}
        for network, peer in routes.items():
            gw = remote.address(peer, POOL_BRIDGE, family)
            spec.routes.append(Route(cidr=str(network), dev=dev, gw=str(gw)))
            peers[peer.node_name] = peer
        for peer in peers.values():
            self._add_neighbor(spec, dev, remote, peer, POOL_BRIDGE, family)

    def _reachable(self, remotes: list[_ClusterView], family: int) -> list:
        return [n for remote in remotes for n in remote.reachable_cidrs(family)]

    def _local_prefix(self, view: _ClusterView, family: int) -> int:
        return ipaddress.ip_network(view.cluster.pool_base(POOL_LOCAL, family)).prefixlen

    def _add_relay_hub(self, spec, view: _ClusterView, gateway: ClusterNode, remotes, family: int) -> None:
        """Local relay device on the designated gateway, with neighbors for each spoke."""
        spokes = [n for n in view.schedulable(family) if n not in view.participants(family)]
        if not spokes or not self._reachable(remotes, family):
            return
        dev = device_name(LOCAL_DEVICE, family)
        vni = self.config.local_vni if family == 4 else self.config.local_vni6
        self._add_device(
            spec, view, gateway, dev, vni, POOL_LOCAL, family, self.config.local_port, self._local_prefix(view, family)
        )
        for spoke in spokes:
            self._add_neighbor(spec, dev, view, spoke, POOL_LOCAL, family)

    def _add_relay_spoke(self, spec, view: _ClusterView, node: ClusterNode, remotes, family: int) -> None:
        """Single route toward the designated local gateway."""
        gateway = view.designated(family)
        reachable = self._reachable(remotes, family)
        if gateway is None or not reachable:
            return
        dev = device_name(LOCAL_DEVICE, family)
        vni = self.config.local_vni if family == 4 else self.config.local_vni6
        self._add_device(
            spec, view, node, dev, vni, POOL_LOCAL, family, self.config.local_port, self._local_prefix(view, family)
        )
        gw = view.address(gateway, POOL_LOCAL, family)
        spec.routes.append(Route(cidr=str(covering_supernet(reachable)), dev=dev, gw=str(gw)))
        self._add_neighbor(spec, dev, view, gateway, POOL_LOCAL, family)


def _drop_duplicates(spec: NodeConfigSpec) -> NodeConfigSpec:
    """Keep the first entry of every key, in sorted order."""

    def first(entries, key):
        kept, seen = [], set()
        for entry in entries:
            if key(entry) not in seen:
                seen.add(key(entry))
                kept.append(entry)
        return kept

    return NodeConfigSpec(
        devices=first(spec.devices, lambda d: d.name),
        routes=first(spec.routes, lambda r: r.cidr),
        fdbs=first(spec.fdbs, lambda f: (f.dev, f.ip)),
        arps=first(spec.arps, lambda a: (a.dev, a.ip)),
        iptables=spec.iptables,
    )


def compile_topology(
    clusters: Iterable[Cluster],
    nodes: Iterable[ClusterNode],
    config: ManagerConfig | None = None,
    table: AllocationTable | None = None,
    strict: bool = False,
) -> CompileResult:
    """Convenience wrapper around :meth:`TopologyCompiler.compile`."""
    return TopologyCompiler(config).compile(clusters, nodes, table=table, strict=strict)
