"""
Collector for live kubelets. Streams /metrics/resource from a node,
parses the Prometheus text and maps it into Samples.

The deadline is absolute. httpx applies its timeout to each socket
operation, so a kubelet that stalls after its headers could hold a read
open for another full timeout. A watchdog timer therefore shuts down the
request's socket when the deadline passes, which wakes the blocked read
and drops the connection instead of leaving it to finish in the
background.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from clustermetrics.collector.base import (
    HTTP_STATUS,
    TIMEOUT,
    UNPARSABLE,
    UNREACHABLE,
    MetricsCollector,
    NodeScrapeError,
)
from clustermetrics.collector.decode import decode_resource_metrics
from clustermetrics.collector.prometheus_parser import parse_prometheus_text
from clustermetrics.config import KubeletClientConfig
from clustermetrics.metrics import NodeRef, Sample
from clustermetrics.telemetry import Telemetry

log = logging.getLogger(__name__)

# httpcore trace events that hand over a freshly opened network stream
_STREAM_EVENTS = ("connection.connect_tcp.complete", "connection.start_tls.complete")


class _DeadlineWatchdog:
    """Shuts down every network stream a request used once the deadline passes."""

    def __init__(self, node: NodeRef, remaining: float):
        self._node = node
        self._lock = threading.Lock()
        self._streams = []
        self._fired = False
        self._timer = threading.Timer(remaining, self._fire)
        self._timer.daemon = True

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._fired

    def __enter__(self) -> _DeadlineWatchdog:
        self._timer.start()
        return self

    def __exit__(self, *exc_info):
        self._timer.cancel()

    def trace(self, event_name: str, info: dict):
        # Passed as the httpx "trace" extension; new connections show up here
        if event_name in _STREAM_EVENTS:
            self.watch(info.get("return_value"))

    def watch(self, stream):
        """Track a stream; a reused keep-alive connection is only seen on the response."""
        if stream is None:
            return
        with self._lock:
            self._streams.append(stream)
            fired = self._fired
        if fired:
            _shutdown(stream)

    def _fire(self):
        with self._lock:
            self._fired = True
            streams = list(self._streams)
        log.debug("Deadline passed for node %s, aborting %d stream(s)", self._node.name, len(streams))
        for stream in streams:
            _shutdown(stream)


def _shutdown(stream):
    sock = stream.get_extra_info("socket")
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        # Already closed by the reading side
        log.debug("Socket shutdown after deadline failed: %s", e)


class KubeletCollector(MetricsCollector):

    def __init__(
        self,
        config: Optional[KubeletClientConfig] = None,
        telemetry: Optional[Telemetry] = None,
        client: Optional[httpx.Client] = None,
    ):
        self._config = config or KubeletClientConfig()
        self._telemetry = telemetry
        self._client = client if client is not None else self._config.build_client()

    def url_for(self, node: NodeRef) -> str:
        return node.base_url(self._config.scheme) + self._config.metrics_path

    def collect(self, node: NodeRef, timeout: float) -> List[Sample]:
        """Scrape one kubelet, return its node and container samples."""
        start = time.monotonic()
        try:
            samples = self._collect(node, start + timeout)
        except NodeScrapeError as e:
            self._observe(node, start, success=False, reason=e.reason)
            raise
        self._observe(node, start, success=True)
        return samples

    def _collect(self, node: NodeRef, deadline: float) -> List[Sample]:
        url = self.url_for(node)
        body = self._fetch(node, url, deadline)
        received_at = datetime.now(timezone.utc)

        try:
            text = body.decode("utf-8")
            families = parse_prometheus_text(text)
            return decode_resource_metrics(node.name, families, received_at)
        except (UnicodeDecodeError, ValueError) as e:
            raise NodeScrapeError(node, UNPARSABLE, str(e), cause=e) from e

    def _fetch(self, node: NodeRef, url: str, deadline: float) -> bytes:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise NodeScrapeError(node, TIMEOUT, "no time left before request")

        limit = self._config.max_body_bytes
        chunks = []
        size = 0
        with _DeadlineWatchdog(node, remaining) as watchdog:
            try:
                with self._client.stream(
                    "GET", url,
                    timeout=httpx.Timeout(remaining),
                    extensions={"trace": watchdog.trace},
                ) as response:
                    watchdog.watch(response.extensions.get("network_stream"))
                    if response.status_code != 200:
                        raise NodeScrapeError(
                            node, HTTP_STATUS,
                            f"GET {url} returned {response.status_code}",
                        )
                    for chunk in response.iter_bytes():
                        size += len(chunk)
                        if size > limit:
                            raise NodeScrapeError(
                                node, UNPARSABLE, f"response body exceeds {limit} bytes"
                            )
                        if time.monotonic() > deadline:
                            raise NodeScrapeError(node, TIMEOUT, "deadline exceeded while reading body")
                        chunks.append(chunk)
            except httpx.TimeoutException as e:
                raise NodeScrapeError(node, TIMEOUT, f"GET {url} timed out", cause=e) from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                if watchdog.fired:
                    raise NodeScrapeError(node, TIMEOUT, f"GET {url} aborted at deadline", cause=e) from e
                raise NodeScrapeError(node, UNREACHABLE, f"GET {url} failed: {e}", cause=e) from e

            # A body delimited by connection close ends cleanly when the socket is shut down
            if watchdog.fired:
                raise NodeScrapeError(node, TIMEOUT, "deadline exceeded while reading body")

        return b"".join(chunks)

    def _observe(self, node: NodeRef, start: float, success: bool, reason: str = ""):
        elapsed = time.monotonic() - start
        log.debug("Scraped node %s in %.3fs (success=%s)", node.name, elapsed, success)
        if self._telemetry is not None:
            self._telemetry.observe_request(node.name, elapsed, success, reason)

    def name(self) -> str:
        return f"kubelet ({self._config.scheme}, {self._config.metrics_path})"

    def close(self):
        self._client.close()
