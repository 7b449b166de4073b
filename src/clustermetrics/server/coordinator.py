"""
Refresh coordinator: the one background loop that drives the pipeline.

Waits for the node source to finish its initial sync, then every
`metric_resolution` seconds takes a node snapshot, fans out a scrape and
commits the result to the store followed by a sweep. Ticks never
overlap. A tick that runs past the next due time makes the loop skip
ahead to the next slot rather than queueing a catch-up tick.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from clustermetrics.config import ResolutionConfig
from clustermetrics.nodes.source import NodeSource
from clustermetrics.scraper.fanout import Scraper
from clustermetrics.storage.window_store import WindowStore
from clustermetrics.telemetry import Telemetry

log = logging.getLogger(__name__)

SYNC_POLL_INTERVAL = 0.1

# Liveness allows a tick to start this much later than its slot
TICK_DELAY_TOLERANCE = 1.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CoordinatorStatus:
    synced: bool
    ready: bool
    healthy: bool
    ticks: int
    ticks_skipped: int
    last_tick_at: Optional[datetime]
    last_tick_duration: Optional[float]
    last_nodes_scraped: int
    last_nodes_failed: int
    store_entities: int

    def summary(self) -> dict:
        return {
            "synced": self.synced,
            "ready": self.ready,
            "healthy": self.healthy,
            "ticks": self.ticks,
            "ticks_skipped": self.ticks_skipped,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick_duration_s": (
                round(self.last_tick_duration, 3) if self.last_tick_duration is not None else None
            ),
            "nodes_scraped": self.last_nodes_scraped,
            "nodes_failed": self.last_nodes_failed,
            "store_entities": self.store_entities,
        }


class RefreshCoordinator:

    def __init__(
        self,
        nodes: NodeSource,
        scraper: Scraper,
        store: WindowStore,
        config: ResolutionConfig,
        telemetry: Optional[Telemetry] = None,
        clock: Callable[[], datetime] = _utcnow,
        sync_poll_interval: float = SYNC_POLL_INTERVAL,
    ):
        if not isinstance(config, ResolutionConfig):
            raise TypeError("config must be a ResolutionConfig")
        self._nodes = nodes
        self._scraper = scraper
        self._store = store
        self._config = config
        self._telemetry = telemetry
        self._clock = clock
        self._sync_poll_interval = sync_poll_interval

        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._synced = False
        self._ticks = 0
        self._ticks_skipped = 0
        self._last_tick_started: Optional[float] = None
        self._last_tick_at: Optional[datetime] = None
        self._last_tick_duration: Optional[float] = None
        self._last_scraped = 0
        self._last_failed = 0

    @property
    def config(self) -> ResolutionConfig:
        return self._config

    # -- one tick --

    def run_once(self) -> bool:
        """Run one scrape-and-store cycle. Returns False if one was already in flight."""
        if not self._tick_lock.acquire(blocking=False):
            log.warning("Previous tick still running, skipping this one")
            self._record_skipped(1)
            return False

        start = time.monotonic()
        with self._state_lock:
            self._last_tick_started = start
        try:
            nodes = self._nodes.list_nodes()
            result = self._scraper.scrape(nodes, self._config.scrape_timeout)

            now = self._clock()
            self._store.update(
                result.samples, now,
                scraped_nodes=result.scraped_nodes,
                listed_nodes=[n.name for n in nodes],
            )
            self._store.sweep(now, self._config.retention)

            if nodes and not result.scraped_nodes:
                log.warning("All %d nodes failed to scrape, serving stale data", len(nodes))

            duration = time.monotonic() - start
            with self._state_lock:
                self._ticks += 1
                self._last_tick_at = now
                self._last_tick_duration = duration
                self._last_scraped = len(result.scraped_nodes)
                self._last_failed = result.nodes_failed
            if self._telemetry is not None:
                self._telemetry.observe_tick(duration)
        except Exception:
            # Nothing inside a tick may stop the loop
            log.exception("Tick failed")
        finally:
            self._tick_lock.release()
        return True

    def _record_skipped(self, count: int):
        with self._state_lock:
            self._ticks_skipped += count
        if self._telemetry is not None:
            self._telemetry.tick_skipped(count)

    # -- the loop --

    def _wait_for_sync(self) -> bool:
        log.info("Waiting for initial node sync")
        while not self._stop_event.is_set():
            try:
                if self._nodes.has_synced():
                    with self._state_lock:
                        self._synced = True
                    log.info("Node source synced, starting scrapes every %.1fs",
                             self._config.metric_resolution)
                    return True
            except Exception:
                log.exception("Node source sync check failed")
            self._stop_event.wait(self._sync_poll_interval)
        return False

    def _run(self):
        if not self._wait_for_sync():
            return

        resolution = self._config.metric_resolution
        next_due = time.monotonic()
        while not self._stop_event.is_set():
            self.run_once()

            next_due += resolution
            now = time.monotonic()
            if now > next_due:
                missed = int((now - next_due) // resolution) + 1
                log.warning(
                    "Tick took longer than the %.1fs resolution, skipping %d tick(s)",
                    resolution, missed,
                )
                self._record_skipped(missed)
                next_due += missed * resolution

            self._stop_event.wait(max(0.0, next_due - time.monotonic()))

    def start(self):
        if self._thread is not None:
            raise RuntimeError("RefreshCoordinator already started")
        self._thread = threading.Thread(target=self._run, name="refresh-coordinator", daemon=True)
        self._thread.start()
        log.debug("Refresh coordinator started (resolution=%.1fs, timeout=%.1fs)",
                  self._config.metric_resolution, self._config.scrape_timeout)

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    # -- health --

    def synced(self) -> bool:
        with self._state_lock:
            return self._synced

    def ready(self) -> bool:
        """Not ready until a tick has been committed, which the loop only does after sync."""
        with self._state_lock:
            return self._ticks > 0

    def healthy(self) -> bool:
        """Liveness: the loop is still ticking on schedule."""
        with self._state_lock:
            if not self._synced:
                return True
            started = self._last_tick_started
        if started is None:
            return True
        max_delay = (TICK_DELAY_TOLERANCE * self._config.metric_resolution
                     + self._config.scrape_timeout)
        return time.monotonic() - started <= max_delay

    def status(self) -> CoordinatorStatus:
        ready = self.ready()
        healthy = self.healthy()
        with self._state_lock:
            return CoordinatorStatus(
                synced=self._synced,
                ready=ready,
                healthy=healthy,
                ticks=self._ticks,
                ticks_skipped=self._ticks_skipped,
                last_tick_at=self._last_tick_at,
                last_tick_duration=self._last_tick_duration,
                last_nodes_scraped=self._last_scraped,
                last_nodes_failed=self._last_failed,
                store_entities=len(self._store),
            )
