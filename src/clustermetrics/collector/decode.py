"""
Maps kubelet resource-metrics families onto Samples.

Only complete readings are kept: a container missing either its CPU
counter or its working set is dropped, as is a node-level reading
missing either half.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from clustermetrics.collector.prometheus_parser import (
    MetricFamily,
    MetricSample,
    get_gauge,
    iter_samples,
)
from clustermetrics.metrics import EntityKey, Sample

log = logging.getLogger(__name__)

NODE_CPU = "node_cpu_usage_seconds"
NODE_MEMORY = "node_memory_working_set_bytes"
CONTAINER_CPU = "container_cpu_usage_seconds"
CONTAINER_MEMORY = "container_memory_working_set_bytes"
SCRAPE_ERROR = "scrape_error"

_KNOWN = (NODE_CPU, NODE_MEMORY, CONTAINER_CPU, CONTAINER_MEMORY)


def _timestamp(sample: MetricSample, fallback: datetime) -> datetime:
    if sample.timestamp_ms is None:
        return fallback
    return datetime.fromtimestamp(sample.timestamp_ms / 1000.0, tz=timezone.utc)


def _container_id(sample: MetricSample) -> Optional[Tuple[str, str, str]]:
    labels = sample.labels
    namespace = labels.get("namespace", "")
    pod = labels.get("pod", "")
    container = labels.get("container", "")
    if not (namespace and pod and container):
        return None
    return namespace, pod, container


def decode_resource_metrics(
    node_name: str,
    families: Dict[str, MetricFamily],
    received_at: datetime,
) -> List[Sample]:
    """Build one node Sample plus one Sample per container.

    Raises ValueError when the document has none of the resource metrics
    at all, which means we are not talking to a kubelet resource endpoint.
    """
    if not any(name in families for name in _KNOWN):
        raise ValueError("response contains no resource metrics")

    if get_gauge(families, SCRAPE_ERROR):
        log.debug("Kubelet on %s reported a partial scrape error", node_name)

    samples: List[Sample] = []

    node_cpu = iter_samples(families, NODE_CPU)
    node_mem = iter_samples(families, NODE_MEMORY)
    if node_cpu and node_mem and node_cpu[0].value >= 0 and node_mem[0].value >= 0:
        samples.append(Sample(
            key=EntityKey.for_node(node_name),
            timestamp=_timestamp(node_cpu[0], received_at),
            cpu_usage_ns=round(node_cpu[0].value * 1e9),
            memory_working_set_bytes=int(node_mem[0].value),
        ))
    else:
        log.debug("Node %s returned no complete node-level reading", node_name)

    cpu_by_container: Dict[Tuple[str, str, str], MetricSample] = {}
    for s in iter_samples(families, CONTAINER_CPU):
        cid = _container_id(s)
        if cid is not None and s.value >= 0:
            cpu_by_container[cid] = s

    mem_by_container: Dict[Tuple[str, str, str], float] = {}
    for s in iter_samples(families, CONTAINER_MEMORY):
        cid = _container_id(s)
        if cid is not None and s.value >= 0:
            mem_by_container[cid] = s.value

    dropped = 0
    for cid, cpu in cpu_by_container.items():
        memory = mem_by_container.get(cid)
        if memory is None:
            dropped += 1
            continue
        namespace, pod, container = cid
        samples.append(Sample(
            key=EntityKey.for_container(node_name, namespace, pod, container),
            timestamp=_timestamp(cpu, received_at),
            cpu_usage_ns=round(cpu.value * 1e9),
            memory_working_set_bytes=int(memory),
        ))
    dropped += len(set(mem_by_container) - set(cpu_by_container))

    if dropped:
        log.debug("Dropped %d incomplete container readings from %s", dropped, node_name)

    return samples
