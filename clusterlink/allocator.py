"""CIDR allocation for cluster overlay address space.

Every cluster receives one block per pool kind (``local`` and ``bridge``) and
per enabled address family. Blocks are carved from the cluster's pool base in
fixed-size pieces: the starting slot is a hash of the cluster name and
collisions are resolved by linear probing, so the same cluster set always
yields the same assignment. Explicit overrides from the clusters' global CIDR
maps win over carving.

Clusters with ``useIPPool`` do not get whole blocks for their nodes; each node
instead takes the lowest free single address of the pool base that lies
outside every static block. Both strategies share one occupancy check, so no
two allocations of one family ever overlap.

The :class:`AllocationTable` is the authoritative record. Assignments already
present in it are kept while still valid, which keeps allocation stable under
churn, and each change bumps its version so a writer holding an older copy
can detect that it lost a race.
"""

import hashlib
import ipaddress
from collections.abc import Iterable

from pydantic import BaseModel, Field

from clusterlink.config import ManagerConfig
from clusterlink.exceptions import AllocationError, ConflictingOverride, PoolExhausted
from clusterlink.logging_config import get_logger
from clusterlink.models.cluster import Cluster
from clusterlink.models.node import ClusterNode

logger = get_logger(__name__)

POOL_LOCAL = "local"
POOL_BRIDGE = "bridge"
POOL_KINDS = (POOL_LOCAL, POOL_BRIDGE)

SOURCE_CARVED = "carved"
SOURCE_OVERRIDE = "override"


def block_key(cluster: str, pool_kind: str, family: int) -> str:
    return f"{cluster}/{pool_kind}/{family}"


def node_key(node: str, pool_kind: str, family: int) -> str:
    return f"{node}/{pool_kind}/{family}"


def link_key(a: str, b: str) -> str:
    return "|".join(sorted((a, b)))


def override_key(cluster: str, pool_kind: str) -> str:
    """Key looked up in ``globalCIDRsMap`` for a cluster's pool block."""
    return cluster if pool_kind == POOL_LOCAL else f"{cluster}/{POOL_BRIDGE}"


class BlockAllocation(BaseModel):
    """A block assigned to one cluster."""

    cluster: str
    pool: str
    family: int
    cidr: str
    source: str = SOURCE_CARVED


class NodeAllocation(BaseModel):
    """An overlay address assigned to one node."""

    cluster: str
    node: str
    pool: str
    family: int
    address: str
    pooled: bool = False


class AllocationTable(BaseModel):
    """Authoritative, versioned record of every allocation."""

    version: int = 0
    blocks: dict[str, BlockAllocation] = Field(default_factory=dict)
    nodes: dict[str, NodeAllocation] = Field(default_factory=dict)
    links: dict[str, int] = Field(default_factory=dict)

    def content(self) -> dict:
        """Everything except the version, for change detection."""
        return self.model_dump(exclude={"version"})

    def block(self, cluster: str, pool_kind: str, family: int):
        entry = self.blocks.get(block_key(cluster, pool_kind, family))
        return ipaddress.ip_network(entry.cidr) if entry else None

    def node_address(self, node: str, pool_kind: str, family: int):
        entry = self.nodes.get(node_key(node, pool_kind, family))
        return ipaddress.ip_address(entry.address) if entry else None

    def changed_blocks(self, previous: "AllocationTable") -> set[str]:
        """Clusters whose existing blocks were moved relative to ``previous``.

        Newly added and released blocks do not count; only a block that
        exists in both tables with a different CIDR is a reallocation.
        """
        changed = set()
        for key, entry in self.blocks.items():
            old = previous.blocks.get(key)
            if old is not None and old.cidr != entry.cidr:
                changed.add(entry.cluster)
        return changed


def _network_at(base, prefix: int, index: int):
    size = 2 ** (base.max_prefixlen - prefix)
    return type(base)((int(base.network_address) + index * size, prefix))


def _slot_hash(name: str, slots: int) -> int:
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % slots


class CIDRAllocator:
    """Assigns disjoint blocks and node addresses on a private copy of a table."""

    def __init__(self, config: ManagerConfig | None = None, table: AllocationTable | None = None):
        self.config = config or ManagerConfig()
        self.previous = table if table is not None else AllocationTable()
        self.table = self.previous.model_copy(deep=True)
        self._overrides: dict[str, str] = {}
        self._override_errors: dict[str, ConflictingOverride] = {}

    # ------------------------------------------------------------------
    # Occupancy
    # ------------------------------------------------------------------
    def _occupied(self, family: int, exclude_block: str | None = None):
        """Yield (owner, network) for every allocation of ``family``."""
        for key, entry in self.table.blocks.items():
            if entry.family == family and key != exclude_block:
                yield entry.cluster, ipaddress.ip_network(entry.cidr)
        for entry in self.table.nodes.values():
            if entry.family == family and entry.pooled:
                yield entry.cluster, ipaddress.ip_network(entry.address)

    def _first_overlap(self, network, exclude_block: str | None = None) -> str | None:
        for owner, other in self._occupied(network.version, exclude_block):
            if network.overlaps(other):
                return owner
        return None

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------
    def register_overrides(self, clusters: Iterable[Cluster]) -> None:
        """Merge every cluster's global CIDR map into one override set.

        Two clusters disagreeing on the value of one key is a conflicting
        override for the cluster named by that key.
        """
        self._overrides = {}
        self._override_errors = {}
        for cluster in sorted(clusters, key=lambda c: c.name):
            for key, cidr in sorted(cluster.global_cidrs_map.items()):
                current = self._overrides.get(key)
                if current is not None and current != cidr:
                    target = key.split("/")[0]
                    self._override_errors[target] = ConflictingOverride(
                        f"Conflicting overrides for '{key}': {current} and {cidr}",
                        target,
                        other=cluster.name,
                        details=f"'{cluster.name}' disagrees with an earlier cluster's globalCIDRsMap",
                    )
                    continue
                self._overrides[key] = cidr

    def override_for(self, cluster: str, pool_kind: str, family: int):
        cidr = self._overrides.get(override_key(cluster, pool_kind))
        if cidr is None:
            return None
        network = ipaddress.ip_network(cidr)
        return network if network.version == family else None

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------
    def _existing_is_valid(self, cluster: Cluster, pool_kind: str, family: int) -> bool:
        key = block_key(cluster.name, pool_kind, family)
        entry = self.table.blocks.get(key)
        if entry is None:
            return False
        network = ipaddress.ip_network(entry.cidr)
        override = self.override_for(cluster.name, pool_kind, family)
        if override is not None:
            return entry.source == SOURCE_OVERRIDE and network == override
        if entry.source != SOURCE_CARVED:
            return False
        base = ipaddress.ip_network(cluster.pool_base(pool_kind, family))
        return network.prefixlen == self.config.cluster_prefix(family) and network.subnet_of(base)

    def allocate(self, cluster: Cluster, family: int, pool_kind: str):
        """Return the cluster's block for one family and pool kind.

        Raises:
            ConflictingOverride: The override overlaps another allocation
            PoolExhausted: No disjoint block of the configured size remains
        """
        if cluster.name in self._override_errors:
            raise self._override_errors[cluster.name]

        key = block_key(cluster.name, pool_kind, family)
        if self._existing_is_valid(cluster, pool_kind, family):
            return ipaddress.ip_network(self.table.blocks[key].cidr)

        if key in self.table.blocks:
            logger.info(f"Releasing outdated {pool_kind} block {self.table.blocks[key].cidr} of '{cluster.name}'")
            del self.table.blocks[key]

        override = self.override_for(cluster.name, pool_kind, family)
        if override is not None:
            owner = self._first_overlap(override, exclude_block=key)
            if owner is not None:
                raise ConflictingOverride(
                    f"Override {override} for cluster '{cluster.name}' overlaps an allocation of '{owner}'",
                    cluster.name,
                    other=owner,
                )
            self._store_block(cluster.name, pool_kind, family, override, SOURCE_OVERRIDE)
            return override

        network = self._carve(cluster, pool_kind, family)
        self._store_block(cluster.name, pool_kind, family, network, SOURCE_CARVED)
        return network

    def _carve(self, cluster: Cluster, pool_kind: str, family: int):
        base = ipaddress.ip_network(cluster.pool_base(pool_kind, family))
        prefix = self.config.cluster_prefix(family)
        if prefix < base.prefixlen:
            raise PoolExhausted(
                f"{pool_kind} pool {base} is smaller than a /{prefix} cluster block",
                cluster.name,
            )
        slots = 2 ** (prefix - base.prefixlen)
        start = _slot_hash(cluster.name, slots)
        for offset in range(slots):
            candidate = _network_at(base, prefix, (start + offset) % slots)
            if self._first_overlap(candidate) is None:
                return candidate
        raise PoolExhausted(
            f"No free /{prefix} block left in {pool_kind} pool {base} for cluster '{cluster.name}'",
            cluster.name,
            details=f"{slots} blocks exist in the pool; remove clusters or enlarge the pool",
        )

    def _store_block(self, cluster: str, pool_kind: str, family: int, network, source: str) -> None:
        self.table.blocks[block_key(cluster, pool_kind, family)] = BlockAllocation(
            cluster=cluster, pool=pool_kind, family=family, cidr=str(network), source=source
        )
        logger.debug(f"Allocated {pool_kind} block {network} to '{cluster}' ({source})")

    # ------------------------------------------------------------------
    # Node addresses
    # ------------------------------------------------------------------
    def _taken_addresses(self, family: int, exclude: str) -> set[int]:
        return {
            int(ipaddress.ip_address(entry.address))
            for key, entry in self.table.nodes.items()
            if entry.family == family and key != exclude
        }

    def assign_node(self, cluster: Cluster, node: ClusterNode, family: int, pool_kind: str):
        """Return the overlay address of a node in one pool.

        The node must have an underlay address of ``family``.
        """
        key = node_key(node.key, pool_kind, family)
        existing = self.table.nodes.get(key)
        taken = self._taken_addresses(family, exclude=key)

        if cluster.use_ip_pool:
            base = ipaddress.ip_network(cluster.pool_base(pool_kind, family))
            if (
                existing is not None
                and existing.pooled
                and ipaddress.ip_address(existing.address) in base
                and int(ipaddress.ip_address(existing.address)) not in taken
                and self._static_owner(ipaddress.ip_network(existing.address)) is None
            ):
                return ipaddress.ip_address(existing.address)
            address = self._pooled_address(cluster, base, taken)
            pooled = True
        else:
            block = self.table.block(cluster.name, pool_kind, family)
            if block is None:
                raise AllocationError(
                    f"Cluster '{cluster.name}' has no {pool_kind} IPv{family} block", cluster.name
                )
            if (
                existing is not None
                and not existing.pooled
                and ipaddress.ip_address(existing.address) in block
                and int(ipaddress.ip_address(existing.address)) not in taken
            ):
                return ipaddress.ip_address(existing.address)
            address = self._derived_address(cluster, node, block, family, taken)
            pooled = False

        self.table.nodes[key] = NodeAllocation(
            cluster=cluster.name,
            node=node.key,
            pool=pool_kind,
            family=family,
            address=str(address),
            pooled=pooled,
        )
        return address

    def _static_owner(self, network) -> str | None:
        for entry in self.table.blocks.values():
            if entry.family == network.version and network.overlaps(ipaddress.ip_network(entry.cidr)):
                return entry.cluster
        return None

    def _derived_address(self, cluster: Cluster, node: ClusterNode, block, family: int, taken: set[int]):
        """Keep the underlay host bits inside the block, probing upward on collision."""
        size = block.num_addresses
        hostmask = int(block.hostmask)
        first = int(block.network_address)
        host = int(ipaddress.ip_address(node.address(family))) & hostmask
        for offset in range(size):
            candidate = (host + offset) % size
            if candidate == 0 or (family == 4 and candidate == hostmask):
                continue
            if first + candidate not in taken:
                return type(block.network_address)(first + candidate)
        raise PoolExhausted(
            f"No free node address left in block {block} of cluster '{cluster.name}'", cluster.name
        )

    def _pooled_address(self, cluster: Cluster, base, taken: set[int]):
        """Lowest free single address of ``base`` outside every static block."""
        statics = sorted(
            (ipaddress.ip_network(e.cidr) for e in self.table.blocks.values() if e.family == base.version),
            key=lambda n: int(n.network_address),
        )
        address_cls = type(base.network_address)
        first = int(base.network_address)
        last = int(base.broadcast_address)
        candidate = first + 1
        while candidate <= last:
            if base.version == 4 and candidate == last:
                break
            blocking = next(
                (n for n in statics if int(n.network_address) <= candidate <= int(n.broadcast_address)),
                None,
            )
            if blocking is not None:
                candidate = int(blocking.broadcast_address) + 1
                continue
            if candidate not in taken:
                return address_cls(candidate)
            candidate += 1
        raise PoolExhausted(
            f"IP pool {base} has no free address left for cluster '{cluster.name}'", cluster.name
        )

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    def link_id(self, a: str, b: str) -> int:
        """Stable identifier for the tunnel between two clusters (lowest free first)."""
        key = link_key(a, b)
        if key not in self.table.links:
            used = set(self.table.links.values())
            candidate = 1
            while candidate in used:
                candidate += 1
            self.table.links[key] = candidate
            logger.debug(f"Allocated link id {candidate} to {key}")
        return self.table.links[key]

    # ------------------------------------------------------------------
    # Whole-inventory pass
    # ------------------------------------------------------------------
    def release_absent(self, clusters: Iterable[Cluster], nodes: Iterable[ClusterNode]) -> None:
        """Reclaim allocations of clusters and nodes that no longer exist."""
        cluster_names = {c.name for c in clusters}
        node_keys = {n.key for n in nodes if n.cluster_name in cluster_names}
        for key in [k for k, e in self.table.blocks.items() if e.cluster not in cluster_names]:
            logger.info(f"Releasing block {self.table.blocks[key].cidr} of removed cluster")
            del self.table.blocks[key]
        for key in [
            k
            for k, e in self.table.nodes.items()
            if e.cluster not in cluster_names or e.node not in node_keys
        ]:
            logger.debug(f"Reclaiming address {self.table.nodes[key].address} of {self.table.nodes[key].node}")
            del self.table.nodes[key]
        for key in [k for k in self.table.links if not set(k.split("|")) <= cluster_names]:
            del self.table.links[key]

    def allocate_clusters(self, clusters: list[Cluster]) -> dict[str, AllocationError]:
        """Allocate every block of every cluster, isolating failures per cluster.

        Outdated blocks are released first. Valid existing blocks are then
        confirmed, then overrides applied, then the rest carved, so that
        neither an override nor a new cluster can displace a block that is
        already in use. Clusters drawing node addresses from the shared pool
        hold no blocks.
        """
        self.register_overrides(clusters)
        errors: dict[str, AllocationError] = {}
        ordered = sorted(clusters, key=lambda c: c.name)
        wanted = {
            cluster.name: [
                (family, pool_kind)
                for family in cluster.ip_family.families()
                for pool_kind in POOL_KINDS
            ]
            if not cluster.use_ip_pool
            else []
            for cluster in ordered
        }

        for cluster in ordered:
            keep = {block_key(cluster.name, k, f) for f, k in wanted[cluster.name]}
            for key, entry in list(self.table.blocks.items()):
                if entry.cluster != cluster.name:
                    continue
                if key not in keep or not self._existing_is_valid(cluster, entry.pool, entry.family):
                    logger.info(f"Releasing outdated {entry.pool} block {entry.cidr} of '{cluster.name}'")
                    del self.table.blocks[key]

        phases = (
            lambda c, f, k: block_key(c.name, k, f) in self.table.blocks,
            lambda c, f, k: self.override_for(c.name, k, f) is not None,
            lambda c, f, k: True,
        )
        done: set[str] = set()
        for phase in phases:
            for cluster in ordered:
                if cluster.name in errors:
                    continue
                try:
                    for family, pool_kind in wanted[cluster.name]:
                        key = block_key(cluster.name, pool_kind, family)
                        if key in done or not phase(cluster, family, pool_kind):
                            continue
                        self.allocate(cluster, family, pool_kind)
                        done.add(key)
                except AllocationError as e:
                    logger.error(f"Allocation failed for cluster '{cluster.name}': {e.message}")
                    errors[cluster.name] = e
        return errors

    def finish(self) -> AllocationTable:
        """Return the resulting table, with its version bumped if anything changed."""
        if self.table.content() != self.previous.content():
            self.table.version = self.previous.version + 1
        else:
            self.table.version = self.previous.version
        return self.table
