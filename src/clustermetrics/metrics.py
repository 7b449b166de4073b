"""
Core data model for clustermetrics.

Samples come off the kubelet resource endpoint once per scrape per entity.
An entity is either a node or a single container inside a pod; pod totals
are derived on read by summing the pod's containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

NODE = "node"
CONTAINER = "container"


@dataclass(frozen=True)
class NodeRef:
    """A cluster node and where its agent listens."""

    name: str
    address: str
    port: int = 10250

    def base_url(self, scheme: str = "https") -> str:
        host = self.address
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"  # bare IPv6 literal
        return f"{scheme}://{host}:{self.port}"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class EntityKey:
    node: str
    namespace: str = ""
    pod: str = ""
    container: str = ""

    @classmethod
    def for_node(cls, node: str) -> EntityKey:
        return cls(node=node)

    @classmethod
    def for_container(cls, node: str, namespace: str, pod: str, container: str) -> EntityKey:
        return cls(node=node, namespace=namespace, pod=pod, container=container)

    @property
    def kind(self) -> str:
        return CONTAINER if self.container else NODE

    def __str__(self) -> str:
        if self.kind == NODE:
            return f"node/{self.node}"
        return f"{self.namespace}/{self.pod}/{self.container}@{self.node}"


@dataclass(frozen=True)
class Sample:
    """A single point-in-time reading for one entity."""

    key: EntityKey
    timestamp: datetime

    # Cumulative CPU time, nanoseconds
    cpu_usage_ns: int

    # Working set, bytes
    memory_working_set_bytes: int


@dataclass(frozen=True)
class RateMetrics:
    """Usage derived from the two most recent samples of an entity."""

    key: EntityKey
    timestamp: datetime
    window_seconds: float
    cpu_nanocores: float
    memory_working_set_bytes: int

    @property
    def cpu_cores(self) -> float:
        return self.cpu_nanocores / 1e9

    def summary(self) -> dict:
        """Return a plain dict for display or JSON output."""
        return {
            "entity": str(self.key),
            "timestamp": self.timestamp.isoformat(),
            "window_s": round(self.window_seconds, 3),
            "cpu_cores": round(self.cpu_cores, 4),
            "memory_bytes": self.memory_working_set_bytes,
        }


@dataclass(frozen=True)
class PodUsage:
    namespace: str
    pod: str
    node: str
    timestamp: datetime
    window_seconds: float
    cpu_nanocores: float
    memory_working_set_bytes: int
    containers: int

    @property
    def cpu_cores(self) -> float:
        return self.cpu_nanocores / 1e9

    def summary(self) -> dict:
        return {
            "pod": f"{self.namespace}/{self.pod}",
            "node": self.node,
            "timestamp": self.timestamp.isoformat(),
            "cpu_cores": round(self.cpu_cores, 4),
            "memory_bytes": self.memory_working_set_bytes,
            "containers": self.containers,
        }


@dataclass(frozen=True)
class ScrapeFailure:
    node: NodeRef
    error: Exception
    elapsed_seconds: float


@dataclass
class NodeScrapeResult:
    """Outcome of collecting from one node. Exactly one of samples/failure is meaningful."""

    node: NodeRef
    samples: List[Sample] = field(default_factory=list)
    failure: Optional[ScrapeFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class AggregateResult:
    """Everything one fan-out produced, successes and failures alike."""

    samples: List[Sample] = field(default_factory=list)
    failures: List[ScrapeFailure] = field(default_factory=list)
    scraped_nodes: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def nodes_failed(self) -> int:
        return len(self.failures)

    @property
    def nodes_total(self) -> int:
        return len(self.scraped_nodes) + len(self.failures)


@dataclass(frozen=True)
class WindowEntry:
    """The two most recent samples for an entity. Replaced, never mutated."""

    latest: Sample
    last_update: datetime
    previous: Optional[Sample] = None
    missed_scrapes: int = 0

    @property
    def state(self) -> str:
        return "ready" if self.previous is not None else "warm"
