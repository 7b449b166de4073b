"""Tests for the in-memory window store."""

import threading
from datetime import datetime, timedelta, timezone

from clustermetrics.metrics import EntityKey, Sample
from clustermetrics.storage.window_store import WindowStore
from clustermetrics.telemetry import Telemetry

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

NODE_A = EntityKey.for_node("a")


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _sample(key: EntityKey = NODE_A, t: float = 0.0, cpu: int = 0, memory: int = 1024) -> Sample:
    return Sample(key=key, timestamp=_at(t), cpu_usage_ns=cpu, memory_working_set_bytes=memory)


def _container(node: str, pod: str, container: str = "app", namespace: str = "default") -> EntityKey:
    return EntityKey.for_container(node, namespace, pod, container)


def test_first_sample_is_cold_start():
    store = WindowStore()
    store.update([_sample(cpu=100)], now=_at(0))

    assert store.get_latest(NODE_A).cpu_usage_ns == 100
    assert store.get_rate(NODE_A) is None
    assert store.get_entry(NODE_A).state == "warm"


def test_rate_from_two_samples():
    store = WindowStore()
    store.update([_sample(t=0, cpu=100)], now=_at(0))
    store.update([_sample(t=10, cpu=150, memory=4096)], now=_at(10))

    rate = store.get_rate(NODE_A)
    assert rate is not None
    assert rate.cpu_nanocores == 5.0
    assert rate.window_seconds == 10.0
    assert rate.memory_working_set_bytes == 4096
    assert store.get_entry(NODE_A).state == "ready"


def test_only_two_samples_are_kept():
    store = WindowStore()
    store.update([_sample(t=0, cpu=0)], now=_at(0))
    store.update([_sample(t=10, cpu=1000)], now=_at(10))
    store.update([_sample(t=20, cpu=1100)], now=_at(20))

    entry = store.get_entry(NODE_A)
    assert entry.previous.cpu_usage_ns == 1000
    assert store.get_rate(NODE_A).cpu_nanocores == 10.0


def test_non_positive_interval_has_no_rate():
    store = WindowStore()
    store.update([_sample(t=10, cpu=100)], now=_at(0))
    store.update([_sample(t=10, cpu=200)], now=_at(10))
    assert store.get_rate(NODE_A) is None

    store.update([_sample(t=5, cpu=300)], now=_at(20))
    assert store.get_rate(NODE_A) is None


def test_counter_reset_has_no_rate():
    store = WindowStore()
    store.update([_sample(t=0, cpu=5000)], now=_at(0))
    store.update([_sample(t=10, cpu=10)], now=_at(10))
    assert store.get_rate(NODE_A) is None

    store.update([_sample(t=20, cpu=110)], now=_at(20))
    assert store.get_rate(NODE_A).cpu_nanocores == 10.0


def test_unknown_entity_not_found():
    store = WindowStore()
    assert store.get_latest(NODE_A) is None
    assert store.get_rate(NODE_A) is None


def test_sweep_evicts_stale_entries():
    store = WindowStore()
    store.update([_sample(NODE_A, t=0, cpu=1)], now=_at(0))
    store.update([_sample(EntityKey.for_node("b"), t=50, cpu=1)], now=_at(50))

    removed = store.sweep(now=_at(61), max_age=30)

    assert removed == 1
    assert store.get_latest(NODE_A) is None
    assert store.get_rate(NODE_A) is None
    assert store.get_latest(EntityKey.for_node("b")) is not None


def test_sweep_keeps_entries_within_age():
    store = WindowStore()
    store.update([_sample(t=0, cpu=1)], now=_at(0))
    assert store.sweep(now=_at(30), max_age=30) == 0
    assert len(store) == 1


def test_container_dropped_after_two_missed_scrapes():
    store = WindowStore()
    web = _container("a", "web-0")
    db = _container("a", "db-0")

    store.update([_sample(NODE_A, 0, 1), _sample(web, 0, 1), _sample(db, 0, 1)],
                 now=_at(0), scraped_nodes=["a"])
    store.update([_sample(NODE_A, 10, 2), _sample(db, 10, 2)], now=_at(10), scraped_nodes=["a"])
    assert store.get_latest(web) is not None
    assert store.get_entry(web).missed_scrapes == 1

    store.update([_sample(NODE_A, 20, 3), _sample(db, 20, 3)], now=_at(20), scraped_nodes=["a"])
    assert store.get_latest(web) is None
    assert store.get_latest(db) is not None


def test_reappearing_container_resets_miss_count():
    store = WindowStore()
    web = _container("a", "web-0")

    store.update([_sample(web, 0, 1)], now=_at(0), scraped_nodes=["a"])
    store.update([], now=_at(10), scraped_nodes=["a"])
    store.update([_sample(web, 20, 21)], now=_at(20), scraped_nodes=["a"])
    store.update([], now=_at(30), scraped_nodes=["a"])

    entry = store.get_entry(web)
    assert entry is not None
    assert entry.missed_scrapes == 1


def test_failed_node_keeps_its_entries():
    store = WindowStore()
    web = _container("a", "web-0")
    store.update([_sample(NODE_A, 0, 1), _sample(web, 0, 1)], now=_at(0), scraped_nodes=["a"])

    # Node "a" failed twice: it is not in scraped_nodes
    store.update([], now=_at(10), scraped_nodes=[])
    store.update([], now=_at(20), scraped_nodes=[])

    assert store.get_latest(NODE_A) is not None
    assert store.get_latest(web) is not None


def test_node_removed_from_node_list_is_dropped():
    store = WindowStore()
    b = EntityKey.for_node("b")
    web = _container("b", "web-0")
    store.update([_sample(NODE_A, 0, 1), _sample(b, 0, 1), _sample(web, 0, 1)],
                 now=_at(0), scraped_nodes=["a", "b"], listed_nodes=["a", "b"])

    # "b" left the cluster
    store.update([_sample(NODE_A, 10, 2)], now=_at(10), scraped_nodes=["a"], listed_nodes=["a"])
    assert store.get_latest(b) is not None
    assert store.get_entry(web).missed_scrapes == 1

    store.update([_sample(NODE_A, 20, 3)], now=_at(20), scraped_nodes=["a"], listed_nodes=["a"])
    assert store.get_latest(b) is None
    assert store.get_latest(web) is None
    assert store.list_entities() == [NODE_A]


def test_listed_node_that_failed_is_not_reconciled():
    store = WindowStore()
    store.update([_sample(NODE_A, 0, 1)], now=_at(0), scraped_nodes=["a"], listed_nodes=["a"])

    store.update([], now=_at(10), scraped_nodes=[], listed_nodes=["a"])
    store.update([], now=_at(20), scraped_nodes=[], listed_nodes=["a"])

    assert store.get_entry(NODE_A).missed_scrapes == 0


def test_pod_moved_to_another_node_is_not_summed():
    store = WindowStore()
    old = _container("a", "db-0")
    new = _container("b", "db-0")
    store.update([_sample(old, 0, 0, 500)], now=_at(0))
    store.update([_sample(old, 10, 1000, 500)], now=_at(10))

    # Recreated on "b" under the same name while the old entry is still held
    store.update([_sample(new, 20, 0, 100)], now=_at(20))
    assert store.pod_usage("default", "db-0") is None

    store.update([_sample(new, 30, 300, 100)], now=_at(30))
    usage = store.pod_usage("default", "db-0")
    assert usage.node == "b"
    assert usage.containers == 1
    assert usage.cpu_nanocores == 30.0
    assert usage.memory_working_set_bytes == 100
    assert [(p.pod, p.node) for p in store.pod_usages()] == [("db-0", "b")]


def test_node_rates_and_list_entities():
    store = WindowStore()
    b = EntityKey.for_node("b")
    web = _container("a", "web-0")
    store.update([_sample(NODE_A, 0, 0), _sample(b, 0, 0), _sample(web, 0, 0)], now=_at(0))
    store.update([_sample(NODE_A, 10, 10_000_000_000), _sample(web, 10, 10)], now=_at(10))

    rates = store.node_rates()
    assert [r.key.node for r in rates] == ["a"]
    assert rates[0].cpu_cores == 1.0

    assert store.list_entities("node") == [NODE_A, b]
    assert store.list_entities("container") == [web]
    assert len(store.list_entities()) == 3
    assert store.counts() == (2, 1)


def test_pod_usage_sums_containers():
    store = WindowStore()
    app = _container("a", "web-0", "app")
    sidecar = _container("a", "web-0", "sidecar")
    store.update([_sample(app, 0, 0, 100), _sample(sidecar, 0, 0, 50)], now=_at(0))
    store.update([_sample(app, 10, 300, 200), _sample(sidecar, 10, 100, 60)], now=_at(10))

    usage = store.pod_usage("default", "web-0")
    assert usage is not None
    assert usage.cpu_nanocores == 40.0
    assert usage.memory_working_set_bytes == 260
    assert usage.containers == 2
    assert usage.node == "a"
    assert [p.pod for p in store.pod_usages()] == ["web-0"]


def test_pod_usage_requires_every_container():
    store = WindowStore()
    app = _container("a", "web-0", "app")
    sidecar = _container("a", "web-0", "sidecar")
    store.update([_sample(app, 0, 0)], now=_at(0))
    store.update([_sample(app, 10, 100), _sample(sidecar, 10, 5)], now=_at(10))

    assert store.pod_usage("default", "web-0") is None
    assert store.pod_usages() == []


def test_ready_after_first_update():
    store = WindowStore()
    assert not store.ready()
    store.update([], now=_at(0))
    assert store.ready()


def test_telemetry_tracks_size_and_evictions():
    telemetry = Telemetry()
    store = WindowStore(telemetry=telemetry)
    store.update([_sample(NODE_A, 0, 1), _sample(_container("a", "p"), 0, 1)], now=_at(0))

    assert telemetry.value("store_entities", {"kind": "node"}) == 1
    assert telemetry.value("store_entities", {"kind": "container"}) == 1

    store.sweep(now=_at(100), max_age=10)
    assert telemetry.value("store_evictions_total") == 2
    assert telemetry.value("store_entities", {"kind": "node"}) == 0


def test_readers_never_see_partial_entries():
    store = WindowStore()
    keys = [EntityKey.for_node(f"n{i}") for i in range(20)]
    stop = threading.Event()
    problems = []

    def reader():
        while not stop.is_set():
            for key in keys:
                entry = store.get_entry(key)
                if entry is None or entry.previous is None:
                    continue
                # Every write moves latest to previous, so they are always one step apart
                if entry.latest.cpu_usage_ns - entry.previous.cpu_usage_ns != 10:
                    problems.append(entry)
            store.node_rates()

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    try:
        for step in range(200):
            samples = [_sample(k, t=step, cpu=step * 10) for k in keys]
            store.update(samples, now=_at(step))
    finally:
        stop.set()
        for t in threads:
            t.join()

    assert problems == []
    assert all(r.cpu_nanocores == 10.0 for r in store.node_rates())
