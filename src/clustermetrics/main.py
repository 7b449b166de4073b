"""
clustermetrics entry point.

Usage:
    clustermetrics --mock                                  Mock cluster dashboard
    clustermetrics --nodes-file nodes.txt                  Live dashboard
    clustermetrics --node n1=10.0.0.5 --output jsonl       JSON lines, one per tick
    clustermetrics --node n1=10.0.0.5 scrape               One-shot scrape
"""

from __future__ import annotations

import logging
from typing import Tuple

import click

from clustermetrics import __version__
from clustermetrics.collector.kubelet_collector import KubeletCollector
from clustermetrics.collector.mock_collector import MockCollector
from clustermetrics.config import (
    DEFAULT_KUBELET_PORT,
    DEFAULT_METRIC_RESOLUTION,
    DEFAULT_SCRAPE_TIMEOUT,
    KubeletClientConfig,
    ResolutionConfig,
)
from clustermetrics.dashboard.terminal import format_bytes, run_dashboard, run_jsonl
from clustermetrics.mock.generator import FakeCluster
from clustermetrics.nodes.source import FileNodeSource, NodeSource, StaticNodeSource, parse_node_spec
from clustermetrics.scraper.fanout import Scraper
from clustermetrics.server.coordinator import RefreshCoordinator
from clustermetrics.storage.window_store import WindowStore
from clustermetrics.telemetry import Telemetry


log = logging.getLogger("clustermetrics")


def _build_source_and_collector(obj: dict, telemetry: Telemetry):
    """Returns (node source, collector) for the data source chosen on the command line."""
    if obj["mock"]:
        cluster = FakeCluster(nodes=obj["mock_nodes"])
        return StaticNodeSource(cluster.node_refs()), MockCollector(cluster)

    try:
        kubelet = KubeletClientConfig(
            scheme=obj["kubelet_scheme"],
            default_port=obj["kubelet_port"],
            insecure_skip_verify=obj["kubelet_insecure_tls"],
            ca_file=obj["kubelet_ca_file"],
            token_file=obj["kubelet_token_file"],
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    if obj["nodes_file"]:
        source: NodeSource = FileNodeSource(obj["nodes_file"], default_port=kubelet.default_port)
    else:
        try:
            source = StaticNodeSource(
                parse_node_spec(spec, kubelet.default_port) for spec in obj["node"]
            )
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--node") from e

    return source, KubeletCollector(kubelet, telemetry=telemetry)


def _resolution(obj: dict) -> ResolutionConfig:
    try:
        return ResolutionConfig(
            metric_resolution=obj["resolution"],
            scrape_timeout=obj["scrape_timeout"],
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--resolution/--scrape-timeout") from e


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="clustermetrics")
@click.option("--mock", is_flag=True, default=False, help="Scrape a simulated in-process cluster")
@click.option("--mock-nodes", default=3, help="Number of nodes in the simulated cluster")
@click.option("--node", multiple=True, help="Node to scrape, as name=address[:port] (repeatable)")
@click.option("--nodes-file", default=None, type=click.Path(dir_okay=False),
              help="File with one node per line, re-read every tick")
@click.option("--resolution", default=DEFAULT_METRIC_RESOLUTION, type=float,
              help="Seconds between scrapes")
@click.option("--scrape-timeout", default=DEFAULT_SCRAPE_TIMEOUT, type=float,
              help="Per-node scrape deadline in seconds (must not exceed --resolution)")
@click.option("--kubelet-scheme", type=click.Choice(["https", "http"]), default="https")
@click.option("--kubelet-port", default=DEFAULT_KUBELET_PORT, help="Port used when a node gives none")
@click.option("--kubelet-insecure-tls", is_flag=True, default=False,
              help="Do not verify kubelet serving certificates")
@click.option("--kubelet-ca-file", default=None, help="CA bundle for kubelet certificates")
@click.option("--kubelet-token-file", default=None, help="Bearer token file for kubelet requests")
@click.option("--max-workers", default=None, type=int, help="Cap on concurrent node scrapes")
@click.option("--refresh", default=2.0, help="Display refresh interval in seconds")
@click.option("--output", type=click.Choice(["tui", "jsonl"]), default="tui",
              help="Output mode: tui (Rich dashboard) or jsonl (one JSON line per tick)")
@click.option("--metrics-port", default=0, help="Expose own Prometheus metrics on this port (0 = off)")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging")
@click.pass_context
def cli(ctx, mock: bool, mock_nodes: int, node: Tuple[str, ...], nodes_file: str,
        resolution: float, scrape_timeout: float, kubelet_scheme: str, kubelet_port: int,
        kubelet_insecure_tls: bool, kubelet_ca_file: str, kubelet_token_file: str,
        max_workers: int, refresh: float, output: str, metrics_port: int, verbose: bool):
    """clustermetrics - node and pod resource usage from kubelets."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj.update(
        mock=mock,
        mock_nodes=mock_nodes,
        node=node,
        nodes_file=nodes_file,
        resolution=resolution,
        scrape_timeout=scrape_timeout,
        kubelet_scheme=kubelet_scheme,
        kubelet_port=kubelet_port,
        kubelet_insecure_tls=kubelet_insecure_tls,
        kubelet_ca_file=kubelet_ca_file,
        kubelet_token_file=kubelet_token_file,
        max_workers=max_workers,
        refresh=refresh,
        output=output,
        metrics_port=metrics_port,
    )

    if not mock and not node and not nodes_file:
        click.echo("Please specify a data source: --mock, --node or --nodes-file")
        raise SystemExit(1)

    # If no subcommand, run the continuous pipeline
    if ctx.invoked_subcommand is None:
        config = _resolution(ctx.obj)
        telemetry = Telemetry()
        source, collector = _build_source_and_collector(ctx.obj, telemetry)
        store = WindowStore(telemetry=telemetry)
        scraper = Scraper(collector, max_workers=max_workers, telemetry=telemetry)
        coordinator = RefreshCoordinator(source, scraper, store, config, telemetry=telemetry)

        if metrics_port:
            telemetry.serve(metrics_port)
            log.info("Serving own metrics on :%d", metrics_port)

        runner = run_jsonl if output == "jsonl" else run_dashboard
        try:
            runner(coordinator, store, collector.name(), refresh_interval=refresh)
        finally:
            collector.close()


@cli.command()
@click.pass_context
def scrape(ctx):
    """Scrape every node once and print what came back."""
    from rich.console import Console
    from rich.table import Table

    config = _resolution(ctx.obj)
    telemetry = Telemetry()
    source, collector = _build_source_and_collector(ctx.obj, telemetry)
    scraper = Scraper(collector, max_workers=ctx.obj["max_workers"], telemetry=telemetry)

    try:
        if not source.has_synced():
            click.echo("Node list is not available")
            raise SystemExit(1)
        result = scraper.scrape(source.list_nodes(), config.scrape_timeout)
    finally:
        collector.close()

    console = Console()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Entity")
    table.add_column("CPU time (s)", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Timestamp", style="dim")
    for sample in sorted(result.samples, key=lambda s: str(s.key)):
        table.add_row(
            str(sample.key),
            f"{sample.cpu_usage_ns / 1e9:.3f}",
            format_bytes(sample.memory_working_set_bytes),
            sample.timestamp.strftime("%H:%M:%S"),
        )
    console.print(table)

    if result.failures:
        console.print("\n[bold red]Failed nodes:[/bold red]")
        for failure in result.failures:
            console.print(f"  [red]{failure.node.name}[/red]  [dim]{failure.error}[/dim]")

    console.print(
        f"\n[dim]{len(result.scraped_nodes)}/{result.nodes_total} nodes, "
        f"{len(result.samples)} samples in {result.duration_seconds:.2f}s[/dim]\n"
    )
    if result.failures and not result.scraped_nodes:
        raise SystemExit(2)


if __name__ == "__main__":
    cli()
