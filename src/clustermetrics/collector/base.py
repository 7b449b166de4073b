"""
Base collector interface.

A collector turns one node into a list of Samples. This keeps the
scraper and the store decoupled from where the data actually comes
from (a real kubelet, the in-process fake cluster, ...).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from clustermetrics.metrics import NodeRef, Sample

# NodeScrapeError.reason values
TIMEOUT = "timeout"
UNREACHABLE = "unreachable"
HTTP_STATUS = "http_status"
UNPARSABLE = "unparsable"


class NodeScrapeError(Exception):
    """A node could not be scraped or its response could not be used."""

    def __init__(self, node: NodeRef, reason: str, message: str,
                 cause: Optional[BaseException] = None):
        super().__init__(f"unable to scrape node {node.name!r} ({reason}): {message}")
        self.node = node
        self.reason = reason
        self.cause = cause


class MetricsCollector(ABC):
    """Interface for all per-node metrics sources."""

    @abstractmethod
    def collect(self, node: NodeRef, timeout: float) -> List[Sample]:
        """Fetch one usage snapshot from a node within `timeout` seconds.

        Raises NodeScrapeError on any failure.
        """
        ...

    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        ...

    def close(self):
        pass
