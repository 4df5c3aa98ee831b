"""Data models for cluster member nodes."""

import ipaddress
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

ROLE_CONTROL_PLANE = "control-plane"
ROLE_WORKER = "worker"
ROLE_GATEWAY = "gateway"
ALLOWED_ROLES = [ROLE_CONTROL_PLANE, ROLE_WORKER, ROLE_GATEWAY]


class ClusterNode(BaseModel):
    """A node inside a registered cluster."""

    model_config = ConfigDict(populate_by_name=True)

    cluster_name: str = Field(alias="clusterName")
    node_name: str = Field(alias="nodeName")
    roles: list[str] = Field(default_factory=lambda: [ROLE_WORKER])
    interface_name: str = Field(default="", alias="interfaceName")
    ip: str = ""
    ip6: str = ""
    pod_cidrs: list[str] = Field(default_factory=list, alias="podCIDRs")

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster_name is not empty."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        return v

    @field_validator("node_name")
    @classmethod
    def validate_node_name(cls, v: str) -> str:
        """Validate node_name follows DNS naming conventions."""
        if not v:
            raise ValueError("node_name cannot be empty")
        if len(v) > 253:
            raise ValueError("node_name cannot exceed 253 characters")
        hostname_pattern = re.compile(
            r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$", re.IGNORECASE
        )
        if not hostname_pattern.match(v):
            raise ValueError(
                f"node_name '{v}' must contain only alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        """Validate every role is known."""
        for role in v:
            if role not in ALLOWED_ROLES:
                raise ValueError(f"role must be one of {ALLOWED_ROLES}, got '{role}'")
        return sorted(set(v))

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        """Validate ip is empty or an IPv4 address."""
        if v and ipaddress.ip_address(v).version != 4:
            raise ValueError(f"ip '{v}' must be an IPv4 address")
        return v

    @field_validator("ip6")
    @classmethod
    def validate_ip6(cls, v: str) -> str:
        """Validate ip6 is empty or an IPv6 address."""
        if v and ipaddress.ip_address(v).version != 6:
            raise ValueError(f"ip6 '{v}' must be an IPv6 address")
        return str(ipaddress.ip_address(v)) if v else v

    @field_validator("pod_cidrs")
    @classmethod
    def validate_pod_cidrs(cls, v: list[str]) -> list[str]:
        """Validate pod CIDRs are valid networks."""
        return [str(ipaddress.ip_network(c, strict=True)) for c in v]

    @property
    def key(self) -> str:
        """Cluster-scoped object name, also the NodeConfig name."""
        return f"{self.cluster_name}-{self.node_name}"

    @property
    def is_gateway(self) -> bool:
        return ROLE_GATEWAY in self.roles

    def address(self, family: int) -> str:
        return self.ip if family == 4 else self.ip6

    def to_resource(self) -> dict:
        """Convert to the custom resource body."""
        return {
            "apiVersion": "kosmos.io/v1alpha1",
            "kind": "ClusterNode",
            "metadata": {"name": self.key},
            "spec": self.model_dump(by_alias=True, mode="json"),
        }

    @classmethod
    def from_resource(cls, obj: dict) -> "ClusterNode":
        """Parse from a custom resource body."""
        return cls(**obj["spec"])

    def to_inventory_dict(self) -> dict:
        """Convert to inventory file format (keyed by cluster and node name)."""
        result = {"roles": list(self.roles)}
        if self.interface_name:
            result["interfaceName"] = self.interface_name
        if self.ip:
            result["ip"] = self.ip
        if self.ip6:
            result["ip6"] = self.ip6
        if self.pod_cidrs:
            result["podCIDRs"] = list(self.pod_cidrs)
        return result

    @classmethod
    def from_inventory_dict(cls, cluster_name: str, node_name: str, data: dict) -> "ClusterNode":
        """Parse from inventory file format."""
        return cls(
            cluster_name=cluster_name,
            node_name=node_name,
            roles=list(data.get("roles", [ROLE_WORKER])),
            interface_name=data.get("interfaceName", ""),
            ip=data.get("ip", ""),
            ip6=data.get("ip6", ""),
            pod_cidrs=list(data.get("podCIDRs", [])),
        )
