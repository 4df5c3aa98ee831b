"""TUI module for sync monitoring."""

from clusterlink.tui.app import MonitorSnapshot, SyncMonitor, collect_snapshot

__all__ = ["MonitorSnapshot", "SyncMonitor", "collect_snapshot"]
