"""Data models for registered clusters."""

import ipaddress
import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_LOCAL_CIDR = "210.0.0.0/8"
DEFAULT_LOCAL_CIDR6 = "9480::/16"
DEFAULT_BRIDGE_CIDR = "220.0.0.0/8"
DEFAULT_BRIDGE_CIDR6 = "9470::/16"
DEFAULT_NAMESPACE = "clusterlink-system"
AUTO_NIC_NAME = "*"

CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class NetworkType(str, Enum):
    """How a cluster's nodes take part in the overlay."""

    P2P = "p2p"
    GATEWAY = "gateway"


class IPFamily(str, Enum):
    """Address families a cluster joins the overlay with."""

    ALL = "all"
    IPV4 = "ipv4"
    IPV6 = "ipv6"

    def families(self) -> tuple[int, ...]:
        """Return the IP versions enabled by this setting."""
        if self is IPFamily.IPV4:
            return (4,)
        if self is IPFamily.IPV6:
            return (6,)
        return (4, 6)


def _validate_cidr(value: str, version: int | None = None) -> str:
    try:
        network = ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"'{value}' is not a valid CIDR: {e}")
    if version is not None and network.version != version:
        raise ValueError(f"'{value}' is not an IPv{version} CIDR")
    return str(network)


class CIDRPair(BaseModel):
    """A pool base block for each address family."""

    ip: str
    ip6: str

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        """Validate the IPv4 pool base."""
        return _validate_cidr(v, 4)

    @field_validator("ip6")
    @classmethod
    def validate_ip6(cls, v: str) -> str:
        """Validate the IPv6 pool base."""
        return _validate_cidr(v, 6)

    def for_family(self, family: int) -> str:
        return self.ip if family == 4 else self.ip6


class NICNodeNames(BaseModel):
    """Interface override for a group of nodes."""

    model_config = ConfigDict(populate_by_name=True)

    interface_name: str = Field(alias="interfaceName")
    node_name: list[str] = Field(alias="nodeName")


class ClusterCondition(BaseModel):
    """Status condition surfaced to operators."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    status: str  # "True", "False", "Unknown"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = Field(default=None, alias="lastTransitionTime")


class ClusterStatus(BaseModel):
    """Discovered network facts about a cluster."""

    model_config = ConfigDict(populate_by_name=True)

    pod_cidrs: list[str] = Field(default_factory=list, alias="podCIDRs")
    service_cidrs: list[str] = Field(default_factory=list, alias="serviceCIDRs")
    conditions: list[ClusterCondition] = Field(default_factory=list)

    @field_validator("pod_cidrs", "service_cidrs")
    @classmethod
    def validate_cidrs(cls, v: list[str]) -> list[str]:
        """Validate every discovered CIDR."""
        return [_validate_cidr(c) for c in v]

    def condition(self, condition_type: str) -> ClusterCondition | None:
        return next((c for c in self.conditions if c.type == condition_type), None)

    def set_condition(self, condition: ClusterCondition) -> bool:
        """Insert or replace a condition, returning True when anything changed.

        The transition time is only moved when the condition status flips.
        """
        current = self.condition(condition.type)
        if current is None:
            self.conditions.append(condition)
            return True
        if (current.status, current.reason, current.message) == (
            condition.status,
            condition.reason,
            condition.message,
        ):
            return False
        if current.status == condition.status:
            condition.last_transition_time = current.last_transition_time
        self.conditions = [c if c.type != condition.type else condition for c in self.conditions]
        return True


class Cluster(BaseModel):
    """A Kubernetes cluster registered with the overlay."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    network_type: NetworkType = Field(default=NetworkType.P2P, alias="networkType")
    ip_family: IPFamily = Field(default=IPFamily.ALL, alias="ipFamily")
    local_cidrs: CIDRPair = Field(
        default_factory=lambda: CIDRPair(ip=DEFAULT_LOCAL_CIDR, ip6=DEFAULT_LOCAL_CIDR6),
        alias="localCIDRs",
    )
    bridge_cidrs: CIDRPair = Field(
        default_factory=lambda: CIDRPair(ip=DEFAULT_BRIDGE_CIDR, ip6=DEFAULT_BRIDGE_CIDR6),
        alias="bridgeCIDRs",
    )
    default_nic_name: str = Field(default=AUTO_NIC_NAME, alias="defaultNICName")
    nic_node_names: list[NICNodeNames] = Field(default_factory=list, alias="nicNodeNames")
    namespace: str = DEFAULT_NAMESPACE
    global_cidrs_map: dict[str, str] = Field(default_factory=dict, alias="globalCIDRsMap")
    use_ip_pool: bool = Field(default=False, alias="useIPPool")
    cni: str = "calico"
    image_repository: str | None = Field(default=None, alias="imageRepository")
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the cluster name is a DNS label."""
        if not v:
            raise ValueError("cluster name cannot be empty")
        if len(v) > 63 or not CLUSTER_NAME_PATTERN.match(v):
            raise ValueError(
                f"cluster name '{v}' must be a lowercase DNS label "
                "(alphanumerics and hyphens, at most 63 characters)"
            )
        return v

    @field_validator("global_cidrs_map")
    @classmethod
    def validate_global_cidrs_map(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate override CIDRs."""
        return {key: _validate_cidr(cidr) for key, cidr in v.items()}

    def pool_base(self, pool_kind: str, family: int) -> str:
        """Return the pool base block for a pool kind ('local' or 'bridge')."""
        pair = self.local_cidrs if pool_kind == "local" else self.bridge_cidrs
        return pair.for_family(family)

    def interface_for(self, node_name: str) -> str | None:
        """Resolve the configured interface for a node, if any."""
        for entry in self.nic_node_names:
            if node_name in entry.node_name:
                return entry.interface_name
        if self.default_nic_name and self.default_nic_name != AUTO_NIC_NAME:
            return self.default_nic_name
        return None

    def to_resource(self) -> dict:
        """Convert to the custom resource body."""
        spec = self.model_dump(by_alias=True, mode="json", exclude={"name", "status"})
        if spec.get("imageRepository") is None:
            spec.pop("imageRepository", None)
        return {
            "apiVersion": "kosmos.io/v1alpha1",
            "kind": "Cluster",
            "metadata": {"name": self.name},
            "spec": spec,
            "status": self.status.model_dump(by_alias=True, mode="json"),
        }

    def to_inventory_dict(self) -> dict:
        """Convert to inventory file format (keyed by cluster name, defaults omitted)."""
        return self.model_dump(by_alias=True, mode="json", exclude={"name"}, exclude_defaults=True)

    @classmethod
    def from_inventory_dict(cls, name: str, data: dict) -> "Cluster":
        """Parse from inventory file format."""
        return cls(name=name, **dict(data or {}))

    @classmethod
    def from_resource(cls, obj: dict) -> "Cluster":
        """Parse from a custom resource body."""
        return cls(
            name=obj["metadata"]["name"],
            **(obj.get("spec") or {}),
            status=ClusterStatus(**(obj.get("status") or {})),
        )
