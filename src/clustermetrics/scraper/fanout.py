"""
Fan-out scraper: one collector call per node, all in parallel, joined
before returning.

A failing or slow node only costs its own contribution. Collectors are
expected to honour their deadline; a worker that still has not finished
shortly after it is written off as timed out and the pool is
abandoned without waiting for it.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from clustermetrics.collector.base import TIMEOUT, UNPARSABLE, MetricsCollector, NodeScrapeError
from clustermetrics.metrics import AggregateResult, NodeRef, NodeScrapeResult, ScrapeFailure
from clustermetrics.telemetry import Telemetry

log = logging.getLogger(__name__)

# Extra time granted past the per-node timeout before a worker is written off
STRAGGLER_GRACE = 0.5


class Scraper:

    def __init__(
        self,
        collector: MetricsCollector,
        max_workers: Optional[int] = None,
        telemetry: Optional[Telemetry] = None,
    ):
        self._collector = collector
        self._max_workers = max_workers
        self._telemetry = telemetry

    def _collect_one(self, node: NodeRef, timeout: float) -> NodeScrapeResult:
        start = time.monotonic()
        try:
            samples = self._collector.collect(node, timeout)
        except NodeScrapeError as e:
            return NodeScrapeResult(node, failure=ScrapeFailure(node, e, time.monotonic() - start))
        except Exception as e:
            # A collector bug must not take down the whole tick
            log.exception("Unexpected error collecting from node %s", node.name)
            err = NodeScrapeError(node, UNPARSABLE, f"unexpected collector error: {e!r}", cause=e)
            return NodeScrapeResult(node, failure=ScrapeFailure(node, err, time.monotonic() - start))
        return NodeScrapeResult(node, samples=samples)

    def scrape(self, nodes: List[NodeRef], per_node_timeout: float) -> AggregateResult:
        """Collect from every node concurrently and merge what came back."""
        start = time.monotonic()
        result = AggregateResult()

        if not nodes:
            log.debug("No nodes to scrape")
            return result

        workers = len(nodes) if self._max_workers is None else min(self._max_workers, len(nodes))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scrape")
        future_to_node: Dict[Future, NodeRef] = {}
        try:
            for node in nodes:
                future_to_node[executor.submit(self._collect_one, node, per_node_timeout)] = node

            # With fewer workers than nodes later nodes queue, so budget per batch
            batches = -(-len(nodes) // workers)
            budget = batches * per_node_timeout + STRAGGLER_GRACE
            done, not_done = wait(future_to_node, timeout=budget)
        finally:
            # Do not block on stragglers; their deadlines will end them
            executor.shutdown(wait=False, cancel_futures=True)

        for future in done:
            outcome: NodeScrapeResult = future.result()
            if outcome.ok:
                result.samples.extend(outcome.samples)
                result.scraped_nodes.append(outcome.node.name)
            else:
                result.failures.append(outcome.failure)

        for future in not_done:
            node = future_to_node[future]
            err = NodeScrapeError(node, TIMEOUT, f"no result after {budget:.1f}s")
            result.failures.append(ScrapeFailure(node, err, time.monotonic() - start))

        result.duration_seconds = time.monotonic() - start

        for failure in result.failures:
            log.warning("Failed to scrape node %s: %s", failure.node.name, failure.error)
        log.info(
            "Scraped %d/%d nodes (%d samples) in %.3fs",
            len(result.scraped_nodes), result.nodes_total,
            len(result.samples), result.duration_seconds,
        )
        if self._telemetry is not None:
            self._telemetry.observe_scrape(
                result.duration_seconds, len(result.scraped_nodes), result.nodes_failed,
            )
        return result
