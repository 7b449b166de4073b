"""
Operational metrics about the pipeline itself.

Thin wrappers around prometheus_client primitives. Every Telemetry
instance owns its registry so several pipelines (or test cases) can live
in one process; the CLI exposes the registry over HTTP when asked to.
Recording is a lock-protected increment and never blocks on readers.
"""

from __future__ import annotations

import re
import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

PREFIX = "clustermetrics"

# Scrapes are bounded by the timeout; buckets cover sub-ms up to ~1 minute
DURATION_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]


def _name(name: str) -> str:
    full = f"{PREFIX}_{name}"
    if not _NAME_RE.match(full):
        raise ValueError(f"Invalid metric name '{full}'. Use snake_case alphanumerics/underscores.")
    return full


class Telemetry:

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        r = self.registry

        self.request_duration = Histogram(
            _name("kubelet_request_duration_seconds"),
            "Duration of requests to kubelets, by outcome",
            ["success"], registry=r, buckets=DURATION_BUCKETS,
        )
        self.requests = Counter(
            _name("kubelet_requests"),
            "Requests sent to kubelets, by outcome and failure reason",
            ["success", "reason"], registry=r,
        )
        self.last_request_time = Gauge(
            _name("kubelet_last_request_time_seconds"),
            "Unix time of the last request to each kubelet",
            ["node"], registry=r,
        )
        self.scrape_duration = Histogram(
            _name("scrape_duration_seconds"),
            "Wall time of one fan-out over all nodes",
            registry=r, buckets=DURATION_BUCKETS,
        )
        self.scrape_nodes = Gauge(
            _name("scrape_nodes"),
            "Nodes covered by the last fan-out, by result",
            ["result"], registry=r,
        )
        self.tick_duration = Histogram(
            _name("tick_duration_seconds"),
            "Wall time of one scrape-and-store cycle",
            registry=r, buckets=DURATION_BUCKETS,
        )
        self.ticks_skipped = Counter(
            _name("ticks_skipped"),
            "Ticks not started because the previous one overran",
            registry=r,
        )
        self.store_entities = Gauge(
            _name("store_entities"),
            "Entities held in the window store, by kind",
            ["kind"], registry=r,
        )
        self.store_evictions = Counter(
            _name("store_evictions"),
            "Entities removed from the window store",
            registry=r,
        )

    # -- hooks called from the pipeline --

    def observe_request(self, node: str, duration: float, success: bool, reason: str = ""):
        label = "true" if success else "false"
        self.request_duration.labels(success=label).observe(duration)
        self.requests.labels(success=label, reason=reason).inc()
        self.last_request_time.labels(node=node).set(time.time())

    def observe_scrape(self, duration: float, scraped: int, failed: int):
        self.scrape_duration.observe(duration)
        self.scrape_nodes.labels(result="success").set(scraped)
        self.scrape_nodes.labels(result="failure").set(failed)

    def observe_tick(self, duration: float):
        self.tick_duration.observe(duration)

    def tick_skipped(self, count: int = 1):
        self.ticks_skipped.inc(count)

    def observe_store(self, nodes: int, containers: int, evicted: int = 0):
        self.store_entities.labels(kind="node").set(nodes)
        self.store_entities.labels(kind="container").set(containers)
        if evicted:
            self.store_evictions.inc(evicted)

    def value(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Current value of a sample, e.g. value("ticks_skipped_total")."""
        return self.registry.get_sample_value(_name(name), labels or {})

    def serve(self, port: int, addr: str = "0.0.0.0"):
        start_http_server(port, addr=addr, registry=self.registry)
