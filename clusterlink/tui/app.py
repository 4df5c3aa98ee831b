"""Terminal UI showing cluster conditions and NodeConfig sync states."""

from dataclasses import dataclass, field
from datetime import datetime

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Vertical
from textual.timer import Timer
from textual.widgets import DataTable, Footer, Header

from clusterlink.exceptions import ClusterLinkError
from clusterlink.logging_config import get_logger
from clusterlink.publisher import utcnow
from clusterlink.reconciler import CONDITION_TOPOLOGY_READY, NodeSyncState, sync_state

logger = get_logger(__name__)

STATE_COLORS = {
    NodeSyncState.SYNCED: "green",
    NodeSyncState.PUBLISHED: "yellow",
    NodeSyncState.PENDING: "dim",
    NodeSyncState.STALE: "red",
}


@dataclass
class ClusterRow:
    name: str
    network_type: str
    ip_family: str
    ready: str
    message: str


@dataclass
class NodeRow:
    name: str
    state: NodeSyncState
    last_change: str
    last_sync: str


@dataclass
class MonitorSnapshot:
    """Everything the monitor shows, read in one go."""

    clusters: list[ClusterRow] = field(default_factory=list)
    nodes: list[NodeRow] = field(default_factory=list)

    def count(self, state: NodeSyncState) -> int:
        return sum(1 for row in self.nodes if row.state is state)


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def collect_snapshot(inventory, node_configs, grace_period: float, now: datetime | None = None) -> MonitorSnapshot:
    """Read clusters, nodes and NodeConfigs and derive every node's sync state.

    Nodes without a NodeConfig yet are reported as Pending.
    """
    now = now or utcnow()
    snapshot = MonitorSnapshot()

    for cluster in sorted(inventory.get_clusters(), key=lambda c: c.name):
        condition = cluster.status.condition(CONDITION_TOPOLOGY_READY)
        snapshot.clusters.append(
            ClusterRow(
                name=cluster.name,
                network_type=cluster.network_type.value,
                ip_family=cluster.ip_family.value,
                ready=condition.status if condition else "Unknown",
                message=condition.message if condition else "",
            )
        )

    stored = {c.name: c for c in node_configs.list()}
    cluster_names = {row.name for row in snapshot.clusters}
    keys = {n.key for n in inventory.get_nodes() if n.cluster_name in cluster_names}
    for key in sorted(keys | set(stored)):
        config = stored.get(key)
        last_change, last_sync = config.status.snapshot() if config else (None, None)
        snapshot.nodes.append(
            NodeRow(
                name=key,
                state=sync_state(config, now, grace_period),
                last_change=_format_time(last_change),
                last_sync=_format_time(last_sync),
            )
        )
    return snapshot


class SyncMonitor(App):
    """Terminal UI for overlay convergence monitoring."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-container {
        height: 100%;
    }

    #clusters-container {
        height: 35%;
        border: solid $primary;
        margin: 1;
    }

    #nodes-container {
        height: 65%;
        border: solid $primary;
        margin: 1;
    }

    DataTable {
        height: 100%;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", priority=True),
        Binding("r", "refresh", "Refresh", priority=True),
        Binding("h", "help", "Help", priority=True),
        Binding("escape", "quit", "Quit", show=False),
    ]

    def __init__(self, inventory=None, node_configs=None, grace_period: float = 90.0, refresh_interval: int = 5):
        """Initialize the TUI.

        Args:
            inventory: Source of clusters and nodes
            node_configs: NodeConfig store
            grace_period: Seconds before an unconfirmed change counts as stale
            refresh_interval: Auto-refresh interval in seconds
        """
        super().__init__()
        self.inventory = inventory
        self.node_configs = node_configs
        self.grace_period = grace_period
        self.refresh_interval = refresh_interval
        self._refresh_timer: Timer | None = None
        self._is_refreshing: bool = False
        self._connection_error: bool = False
        self._last_snapshot: MonitorSnapshot | None = None

    def compose(self) -> ComposeResult:
        """Compose the TUI layout."""
        yield Header(show_clock=True)
        with Vertical(id="main-container"):
            with Container(id="clusters-container"):
                yield DataTable(id="clusters-table", cursor_type="row")
            with Container(id="nodes-container"):
                yield DataTable(id="nodes-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        """Set up the TUI when mounted."""
        self.title = "clusterlink"
        self.sub_title = "Press Q to quit, R to refresh, H for help"

        self.query_one("#clusters-container").border_title = "Clusters"
        self.query_one("#nodes-container").border_title = "NodeConfigs"

        self.query_one("#clusters-table", DataTable).add_columns(
            "Name", "Network", "Family", "Topology Ready", "Message"
        )
        self.query_one("#nodes-table", DataTable).add_columns("Name", "State", "Last Change", "Last Sync")

        self._refresh_timer = self.set_interval(self.refresh_interval, self._auto_refresh, name="auto_refresh")
        self.refresh_data()

    def action_quit(self) -> None:
        """Quit the application."""
        if self._refresh_timer is not None:
            self._refresh_timer.stop()
        self.exit()

    def action_refresh(self) -> None:
        """Manually refresh the data."""
        self.refresh_data()

    def action_help(self) -> None:
        """Show help information."""
        help_text = (
            "Keyboard Shortcuts:\n"
            "  Q / ESC - Quit application\n"
            "  R - Manually refresh data\n"
            "  H - Show this help\n\n"
            "States: Pending (not published), Published (awaiting agent), "
            "Synced (applied), Stale (not applied within "
            f"{self.grace_period:.0f}s)\n\n"
            f"Auto-refresh: Every {self.refresh_interval} seconds"
        )
        self.notify(help_text, title="Help", timeout=10)

    def _auto_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        """Refresh the snapshot from the inventory and NodeConfig store."""
        if self._is_refreshing:
            logger.debug("Refresh already in progress, skipping")
            return
        self._is_refreshing = True
        try:
            snapshot = self._fetch_snapshot()
            if snapshot is not None:
                self._update_display(snapshot)
                self._last_snapshot = snapshot
                if self._connection_error:
                    self._connection_error = False
                    self.notify("Connection restored", severity="information")
            else:
                self._handle_connection_error()
        finally:
            self._is_refreshing = False

    def _fetch_snapshot(self) -> MonitorSnapshot | None:
        if self.inventory is None or self.node_configs is None:
            logger.debug("No data source configured")
            return None
        try:
            return collect_snapshot(self.inventory, self.node_configs, self.grace_period)
        except ClusterLinkError as e:
            logger.warning(f"Failed to fetch sync state: {e.message}")
            return None

    def _update_display(self, snapshot: MonitorSnapshot) -> None:
        clusters_table = self.query_one("#clusters-table", DataTable)
        clusters_table.clear()
        for row in snapshot.clusters:
            color = {"True": "green", "False": "red"}.get(row.ready, "yellow")
            clusters_table.add_row(row.name, row.network_type, row.ip_family, Text(row.ready, style=color), row.message)

        nodes_table = self.query_one("#nodes-table", DataTable)
        nodes_table.clear()
        for row in snapshot.nodes:
            nodes_table.add_row(
                row.name, Text(row.state.value, style=STATE_COLORS[row.state]), row.last_change, row.last_sync
            )

        stale = snapshot.count(NodeSyncState.STALE)
        self.sub_title = (
            f"{snapshot.count(NodeSyncState.SYNCED)}/{len(snapshot.nodes)} synced, {stale} stale"
            " | Press Q to quit, R to refresh, H for help"
        )

    def _handle_connection_error(self) -> None:
        if not self._connection_error:
            self._connection_error = True
            self.notify(
                "Unable to read sync state. Displaying last known state. Will retry automatically.",
                title="Connection Error",
                severity="warning",
                timeout=10,
            )
            logger.warning("Sync state could not be read")
