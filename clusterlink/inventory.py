"""Inventory file management module.

This module reads, updates and writes the cluster inventory file using
ruamel.yaml so that operator comments and formatting survive every write.

The file has three top-level sections::

    clusters:
      <cluster>: {networkType: p2p, ..., status: {podCIDRs: [...]}}
    nodes:
      <cluster>:
        <node>: {roles: [worker], interfaceName: eth0, ip: 10.0.0.1}
    allocations: {version: 3, blocks: {...}, nodes: {...}, links: {...}}
"""

import shutil
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from clusterlink.allocator import AllocationTable
from clusterlink.exceptions import AllocationConflict, ClusterLinkError
from clusterlink.logging_config import get_logger
from clusterlink.models.cluster import Cluster, ClusterCondition
from clusterlink.models.node import ClusterNode

logger = get_logger(__name__)

SECTIONS = ("clusters", "nodes")


class InventoryError(ClusterLinkError):
    """Base exception for inventory operations."""

    pass


class InventoryValidationError(InventoryError):
    """Exception raised when inventory validation fails."""

    pass


class InventoryManager:
    """Manager for the cluster inventory file."""

    def __init__(self, inventory_path: str | Path):
        """Initialize inventory manager.

        Args:
            inventory_path: Path to the inventory file
        """
        self.inventory_path = Path(inventory_path)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)

    def exists(self) -> bool:
        return self.inventory_path.exists()

    def read(self) -> dict:
        """Read inventory file and return parsed data.

        Returns:
            Dictionary containing inventory data

        Raises:
            InventoryError: If file cannot be read or parsed
        """
        logger.debug(f"Reading inventory file: {self.inventory_path}")

        if not self.inventory_path.exists():
            logger.error(f"Inventory file not found: {self.inventory_path}")
            raise InventoryError(
                f"Inventory file not found: {self.inventory_path}",
                details=(
                    f"Expected location: {self.inventory_path.absolute()}\n"
                    "Register a cluster with 'clusterlink add-cluster' to create it, "
                    "or specify a different path with --inventory"
                ),
            )

        try:
            with open(self.inventory_path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read inventory file: {e}", exc_info=True)
            raise InventoryError(
                f"Failed to read inventory file: {e}",
                details=(
                    "The file may be corrupted or have invalid YAML syntax. "
                    f"Check the file at: {self.inventory_path.absolute()}"
                ),
            )

        if data is None:
            logger.debug("Inventory file is empty")
            data = CommentedMap()
        for section in SECTIONS:
            if data.get(section) is None:
                data[section] = CommentedMap()

        logger.debug(f"Successfully read inventory with {len(data['clusters'])} clusters")
        return data

    def _read_or_create(self) -> dict:
        if not self.inventory_path.exists():
            logger.info(f"Creating inventory file: {self.inventory_path}")
            data = CommentedMap()
            for section in SECTIONS:
                data[section] = CommentedMap()
            return data
        return self.read()

    def write(self, data: dict) -> None:
        """Write inventory data to file.

        Args:
            data: Dictionary containing inventory data

        Raises:
            InventoryError: If file cannot be written
        """
        logger.debug(f"Writing inventory file: {self.inventory_path}")

        try:
            self.inventory_path.parent.mkdir(parents=True, exist_ok=True)

            if self.inventory_path.exists():
                backup_path = self.inventory_path.with_suffix(self.inventory_path.suffix + ".backup")
                logger.debug(f"Creating backup at: {backup_path}")
                shutil.copy2(self.inventory_path, backup_path)

            with open(self.inventory_path, "w") as f:
                self.yaml.dump(data, f)

            logger.info(f"Successfully wrote inventory file: {self.inventory_path}")

        except PermissionError as e:
            logger.error(f"Permission denied writing inventory file: {e}")
            raise InventoryError(
                f"Permission denied writing inventory file: {self.inventory_path}",
                details="Check file permissions or try running with appropriate privileges",
            )
        except OSError as e:
            logger.error(f"OS error writing inventory file: {e}")
            raise InventoryError(
                f"Failed to write inventory file: {e}",
                details="Check disk space and file system permissions",
            )

    def validate(self, data: dict) -> None:
        """Validate inventory structure and every entry.

        Args:
            data: Dictionary containing inventory data

        Raises:
            InventoryValidationError: If validation fails
        """
        if not isinstance(data, dict):
            raise InventoryValidationError("Inventory must be a dictionary")

        for section in SECTIONS:
            if not isinstance(data.get(section), dict):
                raise InventoryValidationError(f"'{section}' section must be a dictionary")

        for name, cluster_data in data["clusters"].items():
            try:
                Cluster.from_inventory_dict(name, cluster_data)
            except Exception as e:
                raise InventoryValidationError(f"Cluster '{name}' validation failed: {e}")

        for cluster_name, members in data["nodes"].items():
            if cluster_name not in data["clusters"]:
                raise InventoryValidationError(
                    f"Nodes listed for unknown cluster '{cluster_name}'",
                    details="Register the cluster first or remove its nodes section",
                )
            if not isinstance(members, dict):
                raise InventoryValidationError(f"Nodes of cluster '{cluster_name}' must be a dictionary")
            for node_name, node_data in members.items():
                if not isinstance(node_data, dict):
                    raise InventoryValidationError(
                        f"Node '{node_name}' in cluster '{cluster_name}' must be a dictionary"
                    )
                try:
                    ClusterNode.from_inventory_dict(cluster_name, node_name, node_data)
                except Exception as e:
                    raise InventoryValidationError(
                        f"Node '{node_name}' in cluster '{cluster_name}' validation failed: {e}"
                    )

        allocations = data.get("allocations")
        if allocations is not None:
            try:
                AllocationTable(**allocations)
            except Exception as e:
                raise InventoryValidationError(f"Allocation table validation failed: {e}")

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------
    def get_clusters(self) -> list[Cluster]:
        """Get all registered clusters.

        Raises:
            InventoryError: If inventory cannot be read or parsed
        """
        data = self.read()
        self.validate(data)
        return [Cluster.from_inventory_dict(name, value) for name, value in data["clusters"].items()]

    def get_cluster(self, name: str) -> Cluster:
        data = self.read()
        if name not in data["clusters"]:
            raise InventoryError(f"Cluster '{name}' not found in inventory")
        return Cluster.from_inventory_dict(name, data["clusters"][name])

    def add_cluster(self, cluster: Cluster) -> None:
        """Register a cluster, creating the inventory file if needed.

        Raises:
            InventoryError: If the cluster already exists or the write fails
        """
        logger.info(f"Adding cluster '{cluster.name}' to inventory")
        data = self._read_or_create()
        if cluster.name in data["clusters"]:
            logger.error(f"Cluster '{cluster.name}' already exists in inventory")
            raise InventoryError(
                f"Cluster '{cluster.name}' already exists in inventory",
                details=f"Use 'clusterlink remove-cluster {cluster.name}' to remove it first",
            )
        data["clusters"][cluster.name] = cluster.to_inventory_dict()
        self.write(data)

    def update_cluster(self, cluster: Cluster) -> None:
        data = self.read()
        if cluster.name not in data["clusters"]:
            raise InventoryError(f"Cluster '{cluster.name}' not found in inventory")
        data["clusters"][cluster.name] = cluster.to_inventory_dict()
        self.write(data)

    def remove_cluster(self, name: str) -> int:
        """Unregister a cluster together with all of its nodes.

        Returns:
            Number of nodes removed with the cluster
        """
        data = self.read()
        if name not in data["clusters"]:
            raise InventoryError(f"Cluster '{name}' not found in inventory")
        del data["clusters"][name]
        removed = len(data["nodes"].pop(name, None) or {})
        self.write(data)
        logger.info(f"Removed cluster '{name}' and {removed} nodes")
        return removed

    def set_condition(self, cluster_name: str, condition: ClusterCondition) -> None:
        """Insert or replace one status condition of a cluster."""
        cluster = self.get_cluster(cluster_name)
        if cluster.status.set_condition(condition):
            self.update_cluster(cluster)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def get_nodes(self, cluster: str | None = None) -> list[ClusterNode]:
        """Get all nodes, optionally of a single cluster.

        Raises:
            InventoryError: If inventory cannot be read or parsed
        """
        data = self.read()
        self.validate(data)

        nodes = []
        for cluster_name, members in data["nodes"].items():
            if cluster is not None and cluster_name != cluster:
                continue
            for node_name, node_data in (members or {}).items():
                nodes.append(ClusterNode.from_inventory_dict(cluster_name, node_name, node_data))
        return nodes

    def add_node(self, node: ClusterNode) -> None:
        """Add a node to a registered cluster.

        Raises:
            InventoryError: If the cluster is unknown, the node exists or the write fails
        """
        logger.info(f"Adding node '{node.node_name}' to cluster '{node.cluster_name}'")
        data = self.read()
        self.validate(data)

        if node.cluster_name not in data["clusters"]:
            raise InventoryError(
                f"Cluster '{node.cluster_name}' not found in inventory",
                details=f"Register it first with 'clusterlink add-cluster {node.cluster_name}'",
            )

        members = data["nodes"].get(node.cluster_name)
        if members is None:
            members = data["nodes"][node.cluster_name] = CommentedMap()

        if node.node_name in members:
            logger.error(f"Node '{node.node_name}' already exists in cluster '{node.cluster_name}'")
            raise InventoryError(
                f"Node '{node.node_name}' already exists in cluster '{node.cluster_name}'",
                details=(
                    f"Use 'clusterlink remove-node {node.cluster_name} {node.node_name}' "
                    "to remove it first, or use a different name"
                ),
            )

        for other_name, other_data in members.items():
            other = ClusterNode.from_inventory_dict(node.cluster_name, other_name, other_data)
            for family in (4, 6):
                if node.address(family) and node.address(family) == other.address(family):
                    raise InventoryError(
                        f"IP '{node.address(family)}' is already used by node '{other_name}'",
                        details="Each node of a cluster must have a unique address",
                    )

        members[node.node_name] = node.to_inventory_dict()
        self.write(data)
        logger.info(f"Successfully added node '{node.key}' to inventory")

    def update_node(self, node: ClusterNode) -> None:
        data = self.read()
        members = data["nodes"].get(node.cluster_name) or {}
        if node.node_name not in members:
            raise InventoryError(f"Node '{node.node_name}' not found in cluster '{node.cluster_name}'")
        members[node.node_name] = node.to_inventory_dict()
        self.write(data)

    def remove_node(self, cluster_name: str, node_name: str) -> None:
        """Remove a node from a cluster.

        Raises:
            InventoryError: If node not found or operation fails
        """
        data = self.read()
        members = data["nodes"].get(cluster_name) or {}
        if node_name not in members:
            raise InventoryError(f"Node '{node_name}' not found in cluster '{cluster_name}'")
        del members[node_name]
        if not members and cluster_name in data["nodes"]:
            del data["nodes"][cluster_name]
        self.write(data)

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------
    def read_allocations(self) -> AllocationTable:
        data = self.read()
        allocations = data.get("allocations")
        return AllocationTable(**allocations) if allocations else AllocationTable()

    def write_allocations(self, table: AllocationTable, expected_version: int) -> None:
        """Persist the allocation table if nobody saved a newer one.

        Raises:
            AllocationConflict: The stored table is not at ``expected_version``
        """
        data = self.read()
        stored = data.get("allocations") or {}
        current = stored.get("version", 0)
        if current != expected_version:
            raise AllocationConflict(
                f"Allocation table in {self.inventory_path} is at version {current}, expected {expected_version}",
                details="Reload the table and compile again",
            )
        data["allocations"] = table.model_dump(mode="json")
        self.write(data)


class InventoryAllocationStore:
    """Allocation table stored in the inventory file."""

    def __init__(self, manager: InventoryManager):
        self.manager = manager

    def load(self) -> AllocationTable:
        return self.manager.read_allocations()

    def save(self, table: AllocationTable, expected_version: int) -> None:
        self.manager.write_allocations(table, expected_version)
