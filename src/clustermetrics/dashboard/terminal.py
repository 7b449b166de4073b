"""Terminal dashboard using Rich. Shows per-node and per-pod usage straight from the store."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import List

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from clustermetrics import __version__
from clustermetrics.metrics import NODE, PodUsage, RateMetrics
from clustermetrics.server.coordinator import CoordinatorStatus, RefreshCoordinator
from clustermetrics.storage.window_store import WindowStore

log = logging.getLogger(__name__)

# Keep the pod panel readable on a normal terminal
TOP_PODS = 15

_MIB = 1024 * 1024


def _color_for_cores(cores: float) -> str:
    if cores < 0.5:
        return "green"
    elif cores < 2.0:
        return "yellow"
    return "red"


def format_bytes(value: int) -> str:
    if value >= 1024 * _MIB:
        return f"{value / (1024 * _MIB):.2f}Gi"
    return f"{value / _MIB:.0f}Mi"


def _age(ts: datetime) -> str:
    seconds = (datetime.now(timezone.utc) - ts).total_seconds()
    return f"{max(0.0, seconds):.0f}s"


def _header(status: CoordinatorStatus, source_name: str) -> Text:
    header = Text(f"  clustermetrics v{__version__}  |  {source_name}", style="bold white on blue")
    if not status.ready:
        waiting = "WARMING UP" if status.synced else "WAITING FOR NODE SYNC"
        header.append(f"\n  STATUS: {waiting}", style="bold yellow")
        return header

    style = "bold green" if status.healthy and not status.last_nodes_failed else "bold yellow"
    if not status.healthy:
        style = "bold red"
    header.append(
        f"\n  nodes {status.last_nodes_scraped} ok / {status.last_nodes_failed} failed"
        f"  |  ticks {status.ticks} (skipped {status.ticks_skipped})"
        f"  |  last tick {status.last_tick_duration or 0:.2f}s",
        style=style,
    )
    return header


def _node_table(rates: List[RateMetrics], store: WindowStore) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Node", style="dim")
    table.add_column("CPU (cores)", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Age", justify="right")

    ready = {r.key.node for r in rates}
    for rate in rates:
        color = _color_for_cores(rate.cpu_cores)
        table.add_row(
            rate.key.node,
            f"[{color}]{rate.cpu_cores:.3f}[/{color}]",
            format_bytes(rate.memory_working_set_bytes),
            _age(rate.timestamp),
        )
    # Nodes with a single sample so far
    for key in store.list_entities(NODE):
        if key.node not in ready:
            table.add_row(key.node, "[dim]warming up[/dim]", "", "")
    return table


def _pod_table(pods: List[PodUsage]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Pod", style="dim")
    table.add_column("Node", style="dim")
    table.add_column("CPU (cores)", justify="right")
    table.add_column("Memory", justify="right")

    for pod in sorted(pods, key=lambda p: p.cpu_nanocores, reverse=True)[:TOP_PODS]:
        color = _color_for_cores(pod.cpu_cores)
        table.add_row(
            f"{pod.namespace}/{pod.pod}",
            pod.node,
            f"[{color}]{pod.cpu_cores:.3f}[/{color}]",
            format_bytes(pod.memory_working_set_bytes),
        )
    return table


def build_display(coordinator: RefreshCoordinator, store: WindowStore, source_name: str) -> Layout:
    status = coordinator.status()
    rates = store.node_rates()
    pods = store.pod_usages()

    layout = Layout()
    layout.split_column(
        Layout(Panel(_header(status, source_name), border_style="blue"), size=4),
        Layout(name="body"),
        Layout(Panel(Text("  Press Ctrl+C to stop", style="dim"), border_style="dim"), size=3),
    )
    layout["body"].split_row(
        Layout(Panel(_node_table(rates, store), title=f"Nodes ({len(rates)})", border_style="cyan")),
        Layout(Panel(_pod_table(pods), title=f"Top pods ({len(pods)})", border_style="cyan")),
    )
    return layout


def run_dashboard(
    coordinator: RefreshCoordinator,
    store: WindowStore,
    source_name: str,
    refresh_interval: float = 2.0,
):
    console = Console()
    config = coordinator.config

    log.info("Starting dashboard: source=%s, resolution=%.1fs", source_name, config.metric_resolution)
    console.print(f"\n[bold]Starting clustermetrics v{__version__}...[/bold]")
    console.print(f"Source: {source_name}")
    console.print(f"Resolution: every {config.metric_resolution}s (timeout {config.scrape_timeout}s)")
    console.print()

    coordinator.start()
    with Live(console=console, refresh_per_second=1, screen=True) as live:
        try:
            while True:
                live.update(build_display(coordinator, store, source_name))
                time.sleep(refresh_interval)
        except KeyboardInterrupt:
            pass

    coordinator.stop(timeout=config.scrape_timeout + 1)
    status = coordinator.status()
    console.print(f"\n[dim]Dashboard stopped. {status.ticks} ticks, {len(store)} entities held.[/dim]")


def run_jsonl(
    coordinator: RefreshCoordinator,
    store: WindowStore,
    source_name: str,
    refresh_interval: float = 2.0,
):
    """Non-interactive output mode: prints one JSON object per committed tick.

    Designed for Docker, CI pipelines, and log aggregators where a Rich TUI
    isn't available.
    """
    log.info("Starting JSONL output: source=%s", source_name)

    coordinator.start()
    last_tick = 0
    try:
        while True:
            status = coordinator.status()
            if status.ticks != last_tick:
                last_tick = status.ticks
                record = {
                    "source": source_name,
                    "status": status.summary(),
                    "nodes": [r.summary() for r in store.node_rates()],
                    "pods": [p.summary() for p in store.pod_usages()],
                }
                sys.stdout.write(json.dumps(record) + "\n")
                sys.stdout.flush()
            time.sleep(refresh_interval)
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.stop(timeout=coordinator.config.scrape_timeout + 1)
