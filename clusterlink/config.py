"""Manager configuration."""

from pydantic import BaseModel, field_validator, model_validator


class ManagerConfig(BaseModel):
    """Tunables for allocation, compilation and reconciliation."""

    # Allocation
    cluster_prefix_v4: int = 16
    cluster_prefix_v6: int = 32

    # Tunnel devices
    share_bridge_device: bool = False
    bridge_port: int = 4876
    local_port: int = 4877
    bridge_vni: int = 54
    bridge_vni6: int = 64
    local_vni: int = 55
    local_vni6: int = 65
    link_vni_base: int = 1000
    link_vni_base6: int = 2_000_000

    # Reconciliation
    reconcile_interval: float = 30.0
    debounce_seconds: float = 1.0
    max_batch_events: int = 100
    stale_grace_period: float = 90.0
    publish_workers: int = 8
    publish_max_attempts: int = 5
    publish_backoff_seconds: float = 0.2

    # Kubernetes
    namespace: str = "clusterlink-system"
    allocation_configmap: str = "clusterlink-allocations"

    @field_validator("cluster_prefix_v4")
    @classmethod
    def validate_prefix_v4(cls, v: int) -> int:
        """Validate the IPv4 cluster block size."""
        if not 1 <= v <= 30:
            raise ValueError(f"cluster_prefix_v4 must be between 1 and 30, got {v}")
        return v

    @field_validator("cluster_prefix_v6")
    @classmethod
    def validate_prefix_v6(cls, v: int) -> int:
        """Validate the IPv6 cluster block size."""
        if not 1 <= v <= 126:
            raise ValueError(f"cluster_prefix_v6 must be between 1 and 126, got {v}")
        return v

    @field_validator("bridge_port", "local_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate UDP ports."""
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @field_validator(
        "bridge_vni", "bridge_vni6", "local_vni", "local_vni6", "link_vni_base", "link_vni_base6"
    )
    @classmethod
    def validate_vni(cls, v: int) -> int:
        """Validate VXLAN network identifiers fit in 24 bits."""
        if not 1 <= v < 2**24:
            raise ValueError(f"VNI must be between 1 and {2**24 - 1}, got {v}")
        return v

    @field_validator("publish_workers", "publish_max_attempts", "max_batch_events")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be at least 1, got {v}")
        return v

    @field_validator(
        "reconcile_interval", "debounce_seconds", "stale_grace_period", "publish_backoff_seconds"
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"value cannot be negative, got {v}")
        return v

    @model_validator(mode="after")
    def validate_vni_ranges(self) -> "ManagerConfig":
        """Fixed device VNIs must not fall inside the per-link ranges."""
        fixed = {self.bridge_vni, self.bridge_vni6, self.local_vni, self.local_vni6}
        if len(fixed) != 4:
            raise ValueError("bridge and local VNIs must all be distinct")
        if any(v >= self.link_vni_base for v in fixed):
            raise ValueError("bridge and local VNIs must be below link_vni_base")
        if self.link_vni_base6 <= self.link_vni_base:
            raise ValueError("link_vni_base6 must be above link_vni_base")
        return self

    def cluster_prefix(self, family: int) -> int:
        return self.cluster_prefix_v4 if family == 4 else self.cluster_prefix_v6

    def save(self, path: str) -> None:
        """Save configuration to YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str) -> "ManagerConfig":
        """Load configuration from YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))
