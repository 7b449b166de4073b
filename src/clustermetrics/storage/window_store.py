"""
In-memory window store. Keeps the two most recent samples per entity,
which is all a rate needs, and nothing older.

Entries are frozen dataclasses. A write builds a new entry and swaps it
into the map under the lock, so a reader either sees the old entry or
the new one, never a mix. Lookups hold the lock only for the dict
access; rate arithmetic happens on the immutable entry afterwards.

Per entity: absent -> warm (one sample) -> ready (two samples) -> evicted.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from clustermetrics.metrics import (
    CONTAINER,
    NODE,
    EntityKey,
    PodUsage,
    RateMetrics,
    Sample,
    WindowEntry,
)
from clustermetrics.telemetry import Telemetry

log = logging.getLogger(__name__)

# A container missing from this many consecutive scrapes of its node is dropped
MAX_MISSED_SCRAPES = 2


def compute_rate(entry: WindowEntry) -> Optional[RateMetrics]:
    """CPU rate over the entry's window, or None when it cannot be trusted."""
    prev, last = entry.previous, entry.latest
    if prev is None:
        return None  # cold start

    window = (last.timestamp - prev.timestamp).total_seconds()
    if window <= 0:
        log.debug("Non-positive window for %s, rate unavailable", last.key)
        return None

    delta = last.cpu_usage_ns - prev.cpu_usage_ns
    if delta < 0:
        log.debug("CPU counter went backwards for %s (restart?), rate unavailable", last.key)
        return None

    return RateMetrics(
        key=last.key,
        timestamp=last.timestamp,
        window_seconds=window,
        cpu_nanocores=delta / window,
        memory_working_set_bytes=last.memory_working_set_bytes,
    )


class WindowStore:

    def __init__(self, telemetry: Optional[Telemetry] = None):
        self._lock = threading.Lock()
        # Serializes writers; readers only ever take _lock
        self._write_lock = threading.Lock()
        self._entries: Dict[EntityKey, WindowEntry] = {}
        self._telemetry = telemetry
        self._updated = False

    # -- writes (one writer at a time: the refresh coordinator) --

    def update(self, samples: Iterable[Sample], now: datetime,
               scraped_nodes: Optional[Iterable[str]] = None,
               listed_nodes: Optional[Iterable[str]] = None):
        """Fold one tick's samples into the store.

        An entity that did not report this tick picks up a miss when its
        node was scraped successfully (`scraped_nodes`) or is no longer in
        the node list (`listed_nodes`). After MAX_MISSED_SCRAPES misses in a
        row it is dropped. Nodes that are listed but failed to scrape are in
        neither case, so their entries are left alone until they age out.
        """
        with self._write_lock:
            with self._lock:
                current = dict(self._entries)

            seen = set()
            for sample in samples:
                seen.add(sample.key)
                existing = current.get(sample.key)
                if existing is None:
                    current[sample.key] = WindowEntry(latest=sample, last_update=now)
                else:
                    current[sample.key] = WindowEntry(
                        latest=sample, previous=existing.latest, last_update=now,
                    )

            removed = 0
            if scraped_nodes is not None or listed_nodes is not None:
                scraped = set(scraped_nodes or ())
                listed = set(listed_nodes) if listed_nodes is not None else None
                for key, entry in list(current.items()):
                    if key in seen:
                        continue
                    gone = listed is not None and key.node not in listed
                    if not gone and key.node not in scraped:
                        continue
                    missed = entry.missed_scrapes + 1
                    if missed >= MAX_MISSED_SCRAPES:
                        del current[key]
                        removed += 1
                    else:
                        current[key] = WindowEntry(
                            latest=entry.latest, previous=entry.previous,
                            last_update=entry.last_update, missed_scrapes=missed,
                        )

            with self._lock:
                self._entries = current
                self._updated = True

        if removed:
            log.debug("Dropped %d entities no longer reported", removed)
        self._observe(removed)

    def sweep(self, now: datetime, max_age: float) -> int:
        """Remove entries not updated within `max_age` seconds. Returns how many went."""
        cutoff = now - timedelta(seconds=max_age)
        with self._write_lock:
            with self._lock:
                entries = self._entries
            stale = [k for k, e in entries.items() if e.last_update < cutoff]
            if stale:
                current = dict(entries)
                for key in stale:
                    del current[key]
                with self._lock:
                    self._entries = current

        if stale:
            log.info("Evicted %d stale entities (no update for %.0fs)", len(stale), max_age)
        self._observe(len(stale))
        return len(stale)

    # -- reads (any thread, any time) --

    def _get(self, key: EntityKey) -> Optional[WindowEntry]:
        with self._lock:
            return self._entries.get(key)

    def _snapshot(self) -> Dict[EntityKey, WindowEntry]:
        # The map itself is replaced on every write, so the reference is a stable view
        with self._lock:
            return self._entries

    def get_entry(self, key: EntityKey) -> Optional[WindowEntry]:
        return self._get(key)

    def get_latest(self, key: EntityKey) -> Optional[Sample]:
        entry = self._get(key)
        return entry.latest if entry is not None else None

    def get_rate(self, key: EntityKey) -> Optional[RateMetrics]:
        entry = self._get(key)
        if entry is None:
            return None
        return compute_rate(entry)

    def list_entities(self, kind: Optional[str] = None) -> List[EntityKey]:
        entries = self._snapshot()
        keys = [k for k in entries if kind is None or k.kind == kind]
        return sorted(keys, key=lambda k: (k.node, k.namespace, k.pod, k.container))

    def node_rates(self) -> List[RateMetrics]:
        """Rates for every node that has two usable samples."""
        entries = self._snapshot()
        rates = []
        for key, entry in entries.items():
            if key.kind != NODE:
                continue
            rate = compute_rate(entry)
            if rate is not None:
                rates.append(rate)
        return sorted(rates, key=lambda r: r.key.node)

    def _pod_usages(self, entries: Dict[EntityKey, WindowEntry]) -> Dict[Tuple[str, str], PodUsage]:
        # Group per node too: a pod recreated elsewhere under the same name
        # briefly has containers on both nodes
        by_pod: Dict[Tuple[str, str], Dict[str, List[WindowEntry]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for key, entry in entries.items():
            if key.kind == CONTAINER:
                by_pod[(key.namespace, key.pod)][key.node].append(entry)

        usages = {}
        for (namespace, pod), by_node in by_pod.items():
            # Only the node that reported the pod most recently counts
            node, pod_entries = max(
                by_node.items(), key=lambda item: max(e.latest.timestamp for e in item[1]),
            )
            rates = [compute_rate(e) for e in pod_entries]
            # A pod is only reported when every container has a rate
            if any(r is None for r in rates):
                continue
            usages[(namespace, pod)] = PodUsage(
                namespace=namespace,
                pod=pod,
                node=node,
                timestamp=max(r.timestamp for r in rates),
                window_seconds=max(r.window_seconds for r in rates),
                cpu_nanocores=sum(r.cpu_nanocores for r in rates),
                memory_working_set_bytes=sum(r.memory_working_set_bytes for r in rates),
                containers=len(rates),
            )
        return usages

    def pod_usage(self, namespace: str, pod: str) -> Optional[PodUsage]:
        entries = {
            k: e for k, e in self._snapshot().items()
            if k.kind == CONTAINER and k.namespace == namespace and k.pod == pod
        }
        return self._pod_usages(entries).get((namespace, pod))

    def pod_usages(self) -> List[PodUsage]:
        usages = self._pod_usages(self._snapshot())
        return [usages[k] for k in sorted(usages)]

    def ready(self) -> bool:
        """True once at least one tick has been committed."""
        with self._lock:
            return self._updated

    def counts(self) -> Tuple[int, int]:
        entries = self._snapshot()
        nodes = sum(1 for k in entries if k.kind == NODE)
        return nodes, len(entries) - nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _observe(self, evicted: int):
        if self._telemetry is None:
            return
        nodes, containers = self.counts()
        self._telemetry.observe_store(nodes, containers, evicted)
