"""Desired per-node network state consumed by the node agent."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

DEVICE_TYPE_VXLAN = "vxlan"
SPEC_CHANGED_ANNOTATION = "clusterlink.kosmos.io/spec-changed-at"


class Device(BaseModel):
    """Tunnel interface descriptor."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int  # VNI
    name: str
    mac: str
    bind_dev: str = Field(alias="bindDev")
    addr: str  # address/prefix on the device
    port: int
    type: str = DEVICE_TYPE_VXLAN


class Route(BaseModel):
    """Static route to a destination CIDR through a tunnel device."""

    model_config = ConfigDict(frozen=True)

    cidr: str
    dev: str
    gw: str


class Fdb(BaseModel):
    """Forwarding database entry: remote tunnel MAC to underlay IP."""

    model_config = ConfigDict(frozen=True)

    dev: str
    ip: str
    mac: str


class Arp(BaseModel):
    """Static neighbor entry: remote overlay IP to tunnel MAC."""

    model_config = ConfigDict(frozen=True)

    dev: str
    ip: str
    mac: str


class IPTablesRule(BaseModel):
    """Firewall rule installed at the node boundary."""

    model_config = ConfigDict(frozen=True)

    table: str
    chain: str
    rule: str


class NodeConfigSpec(BaseModel):
    """Desired network state for one node."""

    devices: list[Device] = Field(default_factory=list)
    routes: list[Route] = Field(default_factory=list)
    fdbs: list[Fdb] = Field(default_factory=list)
    arps: list[Arp] = Field(default_factory=list)
    iptables: list[IPTablesRule] = Field(default_factory=list)

    def normalized(self) -> "NodeConfigSpec":
        """Return a copy with every list de-duplicated and sorted."""
        return NodeConfigSpec(
            devices=sorted(set(self.devices), key=lambda d: (d.name, d.id)),
            routes=sorted(set(self.routes), key=lambda r: (r.dev, r.cidr, r.gw)),
            fdbs=sorted(set(self.fdbs), key=lambda f: (f.dev, f.ip, f.mac)),
            arps=sorted(set(self.arps), key=lambda a: (a.dev, a.ip, a.mac)),
            iptables=sorted(set(self.iptables), key=lambda t: (t.table, t.chain, t.rule)),
        )

    def duplicate_keys(self) -> list[str]:
        """List entries that share a key but disagree on their value.

        Keys are device name for devices, destination CIDR for routes (across
        all devices) and (device, ip) for FDB and ARP entries.
        """
        problems = []
        seen: dict[tuple, object] = {}
        keyed = (
            [(("device", d.name), d) for d in self.devices]
            + [(("route", r.cidr), r) for r in self.routes]
            + [(("fdb", f.dev, f.ip), f) for f in self.fdbs]
            + [(("arp", a.dev, a.ip), a) for a in self.arps]
        )
        for key, entry in keyed:
            if key in seen and seen[key] != entry:
                problems.append(" ".join(str(k) for k in key))
            seen.setdefault(key, entry)
        return problems

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class NodeConfigStatus(BaseModel):
    """Convergence timestamps.

    ``last_change_time`` is written by the publisher, ``last_sync_time`` by
    the node agent only.
    """

    model_config = ConfigDict(populate_by_name=True)

    last_change_time: datetime | None = Field(default=None, alias="lastChangeTime")
    last_sync_time: datetime | None = Field(default=None, alias="lastSyncTime")

    def snapshot(self) -> tuple[datetime | None, datetime | None]:
        """Return both timestamps read together."""
        return self.last_change_time, self.last_sync_time


class NodeConfig(BaseModel):
    """NodeConfig record, keyed by ``<cluster>-<node>``.

    ``spec_changed_at`` travels with the spec in the same write, as an
    annotation on the custom resource. The status ``lastChangeTime`` is a
    separate write and may lag behind it.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    spec: NodeConfigSpec = Field(default_factory=NodeConfigSpec)
    status: NodeConfigStatus = Field(default_factory=NodeConfigStatus)
    resource_version: str | None = Field(default=None, alias="resourceVersion")
    spec_changed_at: datetime | None = Field(default=None, alias="specChangedAt")

    def spec_json(self) -> str:
        """Canonical serialization of the spec."""
        return self.spec.model_dump_json(by_alias=True)

    @property
    def status_lags_spec(self) -> bool:
        """True when the last spec write was not followed by its status write."""
        if self.spec_changed_at is None:
            return False
        last_change = self.status.last_change_time
        return last_change is None or last_change < self.spec_changed_at

    def change_time(self) -> datetime | None:
        """Latest known change, from the status or the spec annotation."""
        if self.status_lags_spec:
            return self.spec_changed_at
        return self.status.last_change_time

    def to_resource(self) -> dict:
        """Convert to the custom resource body."""
        metadata = {"name": self.name}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.spec_changed_at is not None:
            metadata["annotations"] = {SPEC_CHANGED_ANNOTATION: self.spec_changed_at.isoformat()}
        status = self.status.model_dump(by_alias=True, mode="json", exclude_none=True)
        return {
            "apiVersion": "kosmos.io/v1alpha1",
            "kind": "NodeConfig",
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": status,
        }

    @classmethod
    def from_resource(cls, obj: dict) -> "NodeConfig":
        """Parse from a custom resource body."""
        metadata = obj.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        return cls(
            name=metadata["name"],
            spec=NodeConfigSpec(**(obj.get("spec") or {})),
            status=NodeConfigStatus(**(obj.get("status") or {})),
            resource_version=metadata.get("resourceVersion"),
            spec_changed_at=annotations.get(SPEC_CHANGED_ANNOTATION),
        )
