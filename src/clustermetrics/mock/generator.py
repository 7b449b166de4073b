"""
Mock cluster generator.

Produces fake but plausible kubelet resource metrics so we can develop
and test without a cluster. Each node runs a handful of pods whose CPU
usage wanders around a per-container baseline; counters advance with
the clock, so two scrapes a few seconds apart give sensible rates.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from clustermetrics.metrics import NodeRef

_APPS = ["api", "worker", "frontend", "redis", "postgres", "ingress", "exporter", "scheduler"]
_NAMESPACES = ["default", "kube-system", "monitoring", "payments"]


@dataclass
class FakeContainer:
    namespace: str
    pod: str
    name: str
    baseline_cores: float
    memory_bytes: float
    cpu_seconds: float = 0.0


@dataclass
class FakeNode:
    ref: NodeRef
    containers: List[FakeContainer] = field(default_factory=list)
    system_cores: float = 0.15
    system_memory_bytes: float = 600 * 1024 * 1024
    cpu_seconds: float = 0.0
    last_render: float = 0.0


class FakeCluster:
    """A deterministic-layout cluster whose counters advance with `clock`."""

    def __init__(
        self,
        seed: int = 42,
        nodes: int = 3,
        pods_per_node: int = 4,
        address: str = "127.0.0.1",
        base_port: int = 10250,
        clock: Callable[[], float] = time.time,
    ):
        self._rng = random.Random(seed)
        self._clock = clock
        self._lock = threading.Lock()
        self._nodes: Dict[str, FakeNode] = {}

        for i in range(nodes):
            ref = NodeRef(name=f"node-{i}", address=address, port=base_port + i)
            node = FakeNode(ref=ref, cpu_seconds=self._rng.uniform(1000, 5000))
            for _ in range(pods_per_node):
                app = self._rng.choice(_APPS)
                pod = f"{app}-{self._rng.randrange(16 ** 5):05x}"
                namespace = self._rng.choice(_NAMESPACES)
                # Most pods have one container, some carry a sidecar
                names = [app] if self._rng.random() > 0.3 else [app, "sidecar"]
                for name in names:
                    node.containers.append(FakeContainer(
                        namespace=namespace,
                        pod=pod,
                        name=name,
                        baseline_cores=self._rng.uniform(0.01, 0.8),
                        memory_bytes=self._rng.uniform(20, 900) * 1024 * 1024,
                        cpu_seconds=self._rng.uniform(10, 500),
                    ))
            self._nodes[ref.name] = node

    def node_refs(self) -> List[NodeRef]:
        return [n.ref for n in self._nodes.values()]

    def remove_pod(self, node_name: str, namespace: str, pod: str):
        """Simulate a pod being deleted from a node."""
        with self._lock:
            node = self._nodes[node_name]
            node.containers = [
                c for c in node.containers
                if not (c.namespace == namespace and c.pod == pod)
            ]

    def _advance(self, node: FakeNode, now: float):
        elapsed = max(0.0, now - node.last_render) if node.last_render else 0.0
        node.last_render = now
        total_cores = node.system_cores
        for c in node.containers:
            cores = max(0.0, c.baseline_cores + self._rng.gauss(0, c.baseline_cores * 0.1))
            c.cpu_seconds += cores * elapsed
            c.memory_bytes = max(1024 * 1024, c.memory_bytes + self._rng.gauss(0, 2 * 1024 * 1024))
            total_cores += cores
        node.cpu_seconds += total_cores * elapsed

    def render(self, node_name: str) -> str:
        """Build a Prometheus text blob mimicking the kubelet /metrics/resource output."""
        with self._lock:
            node = self._nodes[node_name]
            now = self._clock()
            self._advance(node, now)
            ts = int(now * 1000)

            node_memory = node.system_memory_bytes + sum(c.memory_bytes for c in node.containers)

            lines = [
                "# HELP container_cpu_usage_seconds_total [STABLE] Cumulative cpu time consumed by the container in core-seconds",
                "# TYPE container_cpu_usage_seconds_total counter",
            ]
            for c in node.containers:
                lines.append(
                    f'container_cpu_usage_seconds_total{{container="{c.name}",'
                    f'namespace="{c.namespace}",pod="{c.pod}"}} {c.cpu_seconds:.9f} {ts}'
                )
            lines += [
                "# HELP container_memory_working_set_bytes [STABLE] Current working set of the container in bytes",
                "# TYPE container_memory_working_set_bytes gauge",
            ]
            for c in node.containers:
                lines.append(
                    f'container_memory_working_set_bytes{{container="{c.name}",'
                    f'namespace="{c.namespace}",pod="{c.pod}"}} {int(c.memory_bytes)} {ts}'
                )
            lines += [
                "# HELP node_cpu_usage_seconds_total [STABLE] Cumulative cpu time consumed by the node in core-seconds",
                "# TYPE node_cpu_usage_seconds_total counter",
                f"node_cpu_usage_seconds_total {node.cpu_seconds:.9f} {ts}",
                "# HELP node_memory_working_set_bytes [STABLE] Current working set of the node in bytes",
                "# TYPE node_memory_working_set_bytes gauge",
                f"node_memory_working_set_bytes {int(node_memory)} {ts}",
                "# HELP scrape_error [ALPHA] 1 if there was an error while getting container metrics, 0 otherwise",
                "# TYPE scrape_error gauge",
                "scrape_error 0",
            ]
            return "\n".join(lines) + "\n"
