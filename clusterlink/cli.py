"""Main CLI entry point for clusterlink."""

import threading
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.table import Table

from clusterlink.exceptions import ClusterLinkError, ConfigurationError
from clusterlink.logging_config import get_logger, setup_logging, show_progress

app = typer.Typer(
    name="clusterlink",
    help="Cross-cluster pod network overlay manager",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DEFAULT_INVENTORY = "clusterlink.yml"

STATE_STYLES = {
    "Synced": "green",
    "Published": "yellow",
    "Pending": "dim",
    "Stale": "red",
}


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
    log_level: str = typer.Option("INFO", "--log-level", help="Minimum level to log (DEBUG, INFO, WARNING, ERROR)"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    try:
        setup_logging(level=log_level, verbose=verbose, log_file=log_path)
    except ConfigurationError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    logger.debug("Logging initialized")


def _load_config(config_path: str | None):
    from pydantic import ValidationError

    from clusterlink.config import ManagerConfig

    if config_path is None:
        return ManagerConfig()
    try:
        return ManagerConfig.load(config_path)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except (ValidationError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Invalid configuration file {config_path}", details=str(e))


def _print_error(e: ClusterLinkError, label: str = "Error") -> None:
    console.print(f"[red]{label}:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")


def _print_validation_error(e) -> None:
    console.print("[red]Validation Error:[/red]")
    for error in e.errors():
        field = ".".join(str(x) for x in error["loc"])
        console.print(f"  - {field}: {error['msg']}")


@app.command()
def version() -> None:
    """Show version information."""
    from clusterlink import __version__

    typer.echo(f"clusterlink version {__version__}")


@app.command()
def add_cluster(
    name: str = typer.Argument(..., help="Name of the cluster to register"),
    network_type: str = typer.Option("p2p", "--network-type", "-n", help="Network model: p2p or gateway"),
    ip_family: str = typer.Option("all", "--ip-family", help="Address families: all, ipv4 or ipv6"),
    pod_cidrs: list[str] = typer.Option([], "--pod-cidr", help="Cluster pod CIDR (repeatable)"),
    service_cidrs: list[str] = typer.Option([], "--service-cidr", help="Cluster service CIDR (repeatable)"),
    nic: str = typer.Option("*", "--nic", help="Default network interface, '*' to use each node's own"),
    use_ip_pool: bool = typer.Option(False, "--use-ip-pool", help="Assign node addresses from a shared pool"),
    global_cidrs: list[str] = typer.Option(
        [], "--global-cidr", help="Allocation override as name=CIDR (repeatable)"
    ),
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
) -> None:
    """
    Register a cluster in the inventory.

    The inventory file is created when it does not exist yet.
    """
    from pydantic import ValidationError

    from clusterlink.inventory import InventoryManager
    from clusterlink.models.cluster import Cluster, ClusterStatus

    overrides = {}
    for entry in global_cidrs:
        if "=" not in entry:
            console.print(f"[red]Error:[/red] Invalid override format: '{entry}'. Expected 'name=CIDR'")
            raise typer.Exit(code=1)
        key, cidr = entry.split("=", 1)
        overrides[key.strip()] = cidr.strip()

    try:
        cluster = Cluster(
            name=name,
            network_type=network_type,
            ip_family=ip_family,
            default_nic_name=nic,
            use_ip_pool=use_ip_pool,
            global_cidrs_map=overrides,
            status=ClusterStatus(pod_cidrs=pod_cidrs, service_cidrs=service_cidrs),
        )
    except ValidationError as e:
        _print_validation_error(e)
        raise typer.Exit(code=1)

    try:
        InventoryManager(inventory_path).add_cluster(cluster)
    except ClusterLinkError as e:
        _print_error(e, "Inventory Error")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully registered cluster '{name}'")
    console.print(f"  Network type: {cluster.network_type.value}")
    console.print(f"  IP family: {cluster.ip_family.value}")
    if pod_cidrs:
        console.print(f"  Pod CIDRs: {', '.join(cluster.status.pod_cidrs)}")
    if service_cidrs:
        console.print(f"  Service CIDRs: {', '.join(cluster.status.service_cidrs)}")


@app.command()
def remove_cluster(
    name: str = typer.Argument(..., help="Name of the cluster to remove"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
) -> None:
    """
    Unregister a cluster and all of its nodes.

    The NodeConfigs of its nodes are deleted by the next reconciliation pass.
    """
    from clusterlink.inventory import InventoryManager

    try:
        manager = InventoryManager(inventory_path)
        cluster = manager.get_cluster(name)

        if not force:
            nodes = manager.get_nodes(cluster=name)
            console.print(f"[yellow]Warning:[/yellow] About to remove cluster '{name}' and {len(nodes)} nodes")
            console.print(f"  Network type: {cluster.network_type.value}")
            if not typer.confirm("Are you sure you want to continue?"):
                console.print("Operation cancelled")
                raise typer.Exit(code=0)

        removed = manager.remove_cluster(name)
    except ClusterLinkError as e:
        _print_error(e, "Inventory Error")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully removed cluster '{name}' ({removed} nodes)")


@app.command()
def add_node(
    cluster: str = typer.Argument(..., help="Cluster the node belongs to"),
    node: str = typer.Argument(..., help="Node name"),
    ip: str = typer.Option("", "--ip", help="IPv4 underlay address"),
    ip6: str = typer.Option("", "--ip6", help="IPv6 underlay address"),
    interface: str = typer.Option("", "--interface", help="Underlay network interface"),
    roles: list[str] = typer.Option(["worker"], "--role", "-r", help="control-plane, worker or gateway (repeatable)"),
    pod_cidrs: list[str] = typer.Option([], "--pod-cidr", help="Pod CIDR served by the node (repeatable)"),
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
) -> None:
    """Add a node to a registered cluster."""
    from pydantic import ValidationError

    from clusterlink.inventory import InventoryManager
    from clusterlink.models.node import ClusterNode

    try:
        member = ClusterNode(
            cluster_name=cluster,
            node_name=node,
            roles=roles,
            interface_name=interface,
            ip=ip,
            ip6=ip6,
            pod_cidrs=pod_cidrs,
        )
    except ValidationError as e:
        _print_validation_error(e)
        raise typer.Exit(code=1)

    try:
        InventoryManager(inventory_path).add_node(member)
    except ClusterLinkError as e:
        _print_error(e, "Inventory Error")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully added node '{node}' to cluster '{cluster}'")
    console.print(f"  Roles: {', '.join(member.roles)}")
    if ip:
        console.print(f"  IP: {ip}")
    if ip6:
        console.print(f"  IPv6: {member.ip6}")
    if not (interface or ip or ip6):
        console.print("[yellow]Note:[/yellow] the node has no interface or address and gets an empty NodeConfig")


@app.command()
def remove_node(
    cluster: str = typer.Argument(..., help="Cluster the node belongs to"),
    node: str = typer.Argument(..., help="Node name"),
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
) -> None:
    """Remove a node from a cluster."""
    from clusterlink.inventory import InventoryManager

    try:
        InventoryManager(inventory_path).remove_node(cluster, node)
    except ClusterLinkError as e:
        _print_error(e, "Inventory Error")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully removed node '{node}' from cluster '{cluster}'")


@app.command()
def allocations(
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
) -> None:
    """Show the allocation table stored in the inventory."""
    from clusterlink.inventory import InventoryManager

    try:
        table = InventoryManager(inventory_path).read_allocations()
    except ClusterLinkError as e:
        _print_error(e, "Inventory Error")
        raise typer.Exit(code=1)

    if not table.blocks and not table.nodes:
        console.print("[yellow]No allocations yet[/yellow]")
        console.print("Tip: run 'clusterlink compile --save' to allocate")
        return

    blocks = Table(title=f"Cluster Blocks (version {table.version})")
    blocks.add_column("Cluster", style="cyan")
    blocks.add_column("Pool", style="magenta")
    blocks.add_column("Family")
    blocks.add_column("CIDR", style="green")
    blocks.add_column("Source", style="blue")
    for entry in sorted(table.blocks.values(), key=lambda e: (e.cluster, e.pool, e.family)):
        blocks.add_row(entry.cluster, entry.pool, f"IPv{entry.family}", entry.cidr, entry.source)
    console.print(blocks)

    nodes = Table(title="Node Addresses")
    nodes.add_column("Node", style="cyan")
    nodes.add_column("Pool", style="magenta")
    nodes.add_column("Address", style="green")
    nodes.add_column("Pooled")
    for entry in sorted(table.nodes.values(), key=lambda e: (e.node, e.pool, e.family)):
        nodes.add_row(entry.node, entry.pool, entry.address, "yes" if entry.pooled else "no")
    console.print(nodes)

    if table.links:
        console.print("\n[bold]Cluster links:[/bold]")
        for key, link in sorted(table.links.items(), key=lambda item: item[1]):
            console.print(f"  {link}: {key.replace('|', ' <-> ')}")


@app.command("compile")
def compile_command(
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Manager configuration file"),
    node: str | None = typer.Option(None, "--node", help="Only print the NodeConfig with this name"),
    save: bool = typer.Option(False, "--save", help="Store the updated allocation table in the inventory"),
    strict: bool = typer.Option(False, "--strict", help="Exit with an error if any cluster fails"),
) -> None:
    """
    Compile the NodeConfigs of the inventory and print them as YAML.

    Examples:
        # Print every NodeConfig
        clusterlink compile

        # Print one node and persist the allocations
        clusterlink compile --node a-a1 --save
    """
    from clusterlink.inventory import InventoryManager
    from clusterlink.topology import TopologyCompiler

    try:
        manager_config = _load_config(config_path)
        manager = InventoryManager(inventory_path)
        table = manager.read_allocations()
        result = TopologyCompiler(manager_config).compile(manager.get_clusters(), manager.get_nodes(), table=table)
        if save and result.table.version != table.version:
            manager.write_allocations(result.table, table.version)
    except ClusterLinkError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    configs = result.configs
    if node is not None:
        if node not in configs:
            console.print(f"[red]Error:[/red] No NodeConfig named '{node}'")
            raise typer.Exit(code=1)
        configs = {node: configs[node]}

    documents = [configs[name].to_resource() for name in sorted(configs)]
    typer.echo(yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False), nl=False)

    for message in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {message}")
    for name, error in sorted(result.errors.items()):
        console.print(f"[red]Cluster '{name}' failed:[/red] {error.message}")
    if strict and result.errors:
        raise typer.Exit(code=1)


@app.command()
def run(
    inventory_path: str = typer.Option(DEFAULT_INVENTORY, "--inventory", "-i", help="Path to inventory file"),
    config_path: str | None = typer.Option(None, "--config", "-c", help="Manager configuration file"),
    kube: bool = typer.Option(False, "--kube", help="Use the Kubernetes API instead of the inventory file"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
    once: bool = typer.Option(False, "--once", help="Run a single reconciliation pass and exit"),
) -> None:
    """
    Run the reconciliation loop.

    With --kube, clusters and nodes are read from custom resources and watched
    for changes. Otherwise the inventory file is the source and NodeConfigs are
    kept in memory, which is mostly useful with --once.
    """
    from clusterlink.reconciler import Reconciler

    watcher = None
    try:
        manager_config = _load_config(config_path)
        if kube:
            from clusterlink.kube import (
                InventoryWatcher,
                KubeAllocationStore,
                KubeInventory,
                KubeNodeConfigStore,
                load_config,
            )

            load_config(kubeconfig)
            reconciler = Reconciler(
                KubeInventory(),
                KubeNodeConfigStore(),
                KubeAllocationStore(manager_config.allocation_configmap, manager_config.namespace),
                manager_config,
            )
            if not once:
                watcher = InventoryWatcher(reconciler)
        else:
            from clusterlink.inventory import InventoryAllocationStore, InventoryManager
            from clusterlink.store import InMemoryNodeConfigStore

            manager = InventoryManager(inventory_path)
            reconciler = Reconciler(
                manager, InMemoryNodeConfigStore(), InventoryAllocationStore(manager), manager_config
            )

        if once:
            report = reconciler.reconcile(full=True)
            _print_report(report)
            if report.failed or report.cluster_errors:
                raise typer.Exit(code=1)
            return

        show_progress()
        stop_event = threading.Event()
        if watcher is not None:
            watcher.start()
        console.print("[bold cyan]Reconciler running[/bold cyan] (Ctrl+C to stop)")
        try:
            reconciler.run(stop_event)
        except KeyboardInterrupt:
            stop_event.set()
            console.print("\n[yellow]Stopped by user[/yellow]")
    except ClusterLinkError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    finally:
        if watcher is not None:
            watcher.stop()


def _print_report(report) -> None:
    table = Table(title=f"Reconciliation pass {report.generation}")
    table.add_column("NodeConfig", style="cyan")
    table.add_column("Action", style="magenta")
    table.add_column("State")
    actions = {key: "published" for key in report.published}
    actions.update({key: "unchanged" for key in report.unchanged})
    actions.update({key: "failed" for key in report.failed})
    for key in sorted(report.states):
        state = report.states[key].value
        table.add_row(key, actions.get(key, "-"), f"[{STATE_STYLES[state]}]{state}[/{STATE_STYLES[state]}]")
    console.print(table)
    for key in report.deleted:
        console.print(f"  Deleted NodeConfig '{key}'")
    for name, message in report.cluster_errors.items():
        console.print(f"[red]Cluster '{name}' failed:[/red] {message}")
    for key, message in report.failed.items():
        console.print(f"[red]NodeConfig '{key}' failed:[/red] {message}")


@app.command()
def status(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Manager configuration file"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
) -> None:
    """
    Show cluster conditions and the sync state of every NodeConfig.

    Nodes whose agent has not confirmed the latest change within the grace
    period are reported as Stale.
    """
    from clusterlink.kube import KubeInventory, KubeNodeConfigStore, load_config
    from clusterlink.tui.app import collect_snapshot

    try:
        manager_config = _load_config(config_path)
        load_config(kubeconfig)
        snapshot = collect_snapshot(KubeInventory(), KubeNodeConfigStore(), manager_config.stale_grace_period)
    except ClusterLinkError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    clusters = Table(title="Clusters")
    clusters.add_column("Name", style="cyan")
    clusters.add_column("Network", style="magenta")
    clusters.add_column("Family")
    clusters.add_column("Topology Ready")
    clusters.add_column("Message")
    for row in snapshot.clusters:
        clusters.add_row(row.name, row.network_type, row.ip_family, row.ready, row.message)
    console.print(clusters)

    nodes = Table(title="NodeConfigs")
    nodes.add_column("Name", style="cyan")
    nodes.add_column("State")
    nodes.add_column("Last Change")
    nodes.add_column("Last Sync")
    for row in snapshot.nodes:
        style = STATE_STYLES[row.state.value]
        nodes.add_row(row.name, f"[{style}]{row.state.value}[/{style}]", row.last_change, row.last_sync)
    console.print(nodes)

    stale = [row.name for row in snapshot.nodes if row.state.value == "Stale"]
    if stale:
        console.print(f"\n[red]⚠ {len(stale)} stale nodes:[/red] {', '.join(stale)}")
    else:
        console.print("\n[green]✓ No stale nodes[/green]")


@app.command()
def monitor(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Manager configuration file"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
    refresh_interval: int = typer.Option(5, "--refresh", help="Refresh interval in seconds"),
) -> None:
    """Open the terminal sync monitor."""
    from clusterlink.kube import KubeInventory, KubeNodeConfigStore, load_config
    from clusterlink.tui import SyncMonitor

    try:
        manager_config = _load_config(config_path)
        load_config(kubeconfig)
    except ClusterLinkError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    SyncMonitor(
        KubeInventory(),
        KubeNodeConfigStore(),
        grace_period=manager_config.stale_grace_period,
        refresh_interval=refresh_interval,
    ).run()


if __name__ == "__main__":
    app()
