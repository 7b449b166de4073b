"""Tests for the concurrent fan-out scraper, using in-memory collectors."""

import threading
import time
from datetime import datetime, timezone
from typing import List

from clustermetrics.collector.base import TIMEOUT, UNPARSABLE, UNREACHABLE, MetricsCollector, NodeScrapeError
from clustermetrics.collector.mock_collector import MockCollector
from clustermetrics.metrics import EntityKey, NodeRef, Sample
from clustermetrics.mock.generator import FakeCluster
from clustermetrics.scraper.fanout import Scraper
from clustermetrics.telemetry import Telemetry


def _nodes(*names: str) -> List[NodeRef]:
    return [NodeRef(name=n, address=f"10.0.0.{i + 1}") for i, n in enumerate(names)]


class ScriptedCollector(MetricsCollector):
    """Returns one node sample per node, with per-node delays and failures."""

    def __init__(self, delays=None, failing=(), crashing=(), cpu: int = 100):
        self.delays = delays or {}
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.cpu = cpu
        self.calls = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def collect(self, node: NodeRef, timeout: float) -> List[Sample]:
        with self._lock:
            self.calls.append(node.name)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            delay = self.delays.get(node.name, 0.0)
            if delay > timeout:
                time.sleep(timeout)
                raise NodeScrapeError(node, TIMEOUT, "deadline exceeded")
            time.sleep(delay)
            if node.name in self.failing:
                raise NodeScrapeError(node, UNREACHABLE, "connection refused")
            if node.name in self.crashing:
                raise RuntimeError("collector bug")
            return [Sample(
                key=EntityKey.for_node(node.name),
                timestamp=datetime.now(timezone.utc),
                cpu_usage_ns=self.cpu,
                memory_working_set_bytes=1,
            )]
        finally:
            with self._lock:
                self._in_flight -= 1

    def name(self) -> str:
        return "scripted"


class HangingCollector(MetricsCollector):
    """Ignores its deadline entirely until released."""

    def __init__(self):
        self.release = threading.Event()

    def collect(self, node: NodeRef, timeout: float) -> List[Sample]:
        self.release.wait(10)
        return []

    def name(self) -> str:
        return "hanging"


def test_all_nodes_succeed():
    scraper = Scraper(ScriptedCollector())
    result = scraper.scrape(_nodes("a", "b", "c"), per_node_timeout=1.0)

    assert sorted(result.scraped_nodes) == ["a", "b", "c"]
    assert result.failures == []
    assert sorted(s.key.node for s in result.samples) == ["a", "b", "c"]
    assert result.nodes_total == 3


def test_one_failing_node_does_not_affect_others():
    scraper = Scraper(ScriptedCollector(failing={"b"}))
    result = scraper.scrape(_nodes("a", "b", "c"), per_node_timeout=1.0)

    assert sorted(s.key.node for s in result.samples) == ["a", "c"]
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.node.name == "b"
    assert failure.error.reason == UNREACHABLE


def test_one_slow_node_times_out_alone():
    scraper = Scraper(ScriptedCollector(delays={"c": 5.0}))
    start = time.monotonic()
    result = scraper.scrape(_nodes("a", "b", "c"), per_node_timeout=0.2)
    elapsed = time.monotonic() - start

    assert sorted(result.scraped_nodes) == ["a", "b"]
    assert [f.node.name for f in result.failures] == ["c"]
    assert result.failures[0].error.reason == TIMEOUT
    assert elapsed < 1.0


def test_unexpected_collector_error_is_isolated():
    scraper = Scraper(ScriptedCollector(crashing={"a"}))
    result = scraper.scrape(_nodes("a", "b"), per_node_timeout=1.0)

    assert result.scraped_nodes == ["b"]
    assert result.failures[0].error.reason == UNPARSABLE


def test_collector_ignoring_deadline_is_written_off():
    collector = HangingCollector()
    scraper = Scraper(collector)
    try:
        start = time.monotonic()
        result = scraper.scrape(_nodes("a", "b"), per_node_timeout=0.1)
        elapsed = time.monotonic() - start
    finally:
        collector.release.set()

    assert result.scraped_nodes == []
    assert {f.node.name for f in result.failures} == {"a", "b"}
    assert all(f.error.reason == TIMEOUT for f in result.failures)
    assert elapsed < 2.0


def test_total_failure_still_returns_result():
    scraper = Scraper(ScriptedCollector(failing={"a", "b"}))
    result = scraper.scrape(_nodes("a", "b"), per_node_timeout=1.0)

    assert result.samples == []
    assert result.nodes_failed == 2
    assert result.nodes_total == 2


def test_no_nodes():
    result = Scraper(ScriptedCollector()).scrape([], per_node_timeout=1.0)
    assert result.samples == []
    assert result.failures == []


def test_scrapes_run_in_parallel():
    names = [f"n{i}" for i in range(20)]
    collector = ScriptedCollector(delays={n: 0.2 for n in names})
    scraper = Scraper(collector)

    start = time.monotonic()
    result = scraper.scrape(_nodes(*names), per_node_timeout=1.0)
    elapsed = time.monotonic() - start

    assert len(result.scraped_nodes) == 20
    # Serial would take 4s
    assert elapsed < 1.0
    assert collector.max_in_flight > 1


def test_max_workers_caps_concurrency():
    names = [f"n{i}" for i in range(6)]
    collector = ScriptedCollector(delays={n: 0.05 for n in names})
    scraper = Scraper(collector, max_workers=2)

    result = scraper.scrape(_nodes(*names), per_node_timeout=1.0)

    assert len(result.scraped_nodes) == 6
    assert collector.max_in_flight <= 2


def test_with_mock_cluster():
    cluster = FakeCluster(seed=5, nodes=3)
    scraper = Scraper(MockCollector(cluster))
    result = scraper.scrape(cluster.node_refs(), per_node_timeout=1.0)

    assert sorted(result.scraped_nodes) == ["node-0", "node-1", "node-2"]
    assert any(s.key.kind == "container" for s in result.samples)


def test_telemetry_tally():
    telemetry = Telemetry()
    scraper = Scraper(ScriptedCollector(failing={"c"}), telemetry=telemetry)
    scraper.scrape(_nodes("a", "b", "c"), per_node_timeout=1.0)

    assert telemetry.value("scrape_nodes", {"result": "success"}) == 2
    assert telemetry.value("scrape_nodes", {"result": "failure"}) == 1
    assert telemetry.value("scrape_duration_seconds_count") == 1
