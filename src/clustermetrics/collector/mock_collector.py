"""
Collector that reads straight from an in-process fake cluster.
Used for local development on machines without a cluster.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from clustermetrics.collector.base import UNREACHABLE, MetricsCollector, NodeScrapeError
from clustermetrics.collector.decode import decode_resource_metrics
from clustermetrics.collector.prometheus_parser import parse_prometheus_text
from clustermetrics.metrics import NodeRef, Sample
from clustermetrics.mock.generator import FakeCluster


class MockCollector(MetricsCollector):
    """Wraps the fake cluster as a standard collector."""

    def __init__(self, cluster: FakeCluster):
        self._cluster = cluster

    def collect(self, node: NodeRef, timeout: float) -> List[Sample]:
        try:
            text = self._cluster.render(node.name)
        except KeyError:
            raise NodeScrapeError(node, UNREACHABLE, "no such node in fake cluster") from None
        families = parse_prometheus_text(text)
        return decode_resource_metrics(node.name, families, datetime.now(timezone.utc))

    def name(self) -> str:
        return "Mock cluster (in-process fake kubelets)"
