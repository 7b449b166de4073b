"""
Node membership sources.

The refresh loop only ever asks two questions: which nodes exist right
now, and has the initial listing finished. Anything that can answer both
(an informer cache, a static list, a file maintained by some other tool)
plugs in here.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

from clustermetrics.config import DEFAULT_KUBELET_PORT
from clustermetrics.metrics import NodeRef

log = logging.getLogger(__name__)


class NodeSource(ABC):
    """Interface for all node membership sources."""

    @abstractmethod
    def list_nodes(self) -> List[NodeRef]:
        """Current snapshot of nodes. Callers must not mutate it."""
        ...

    @abstractmethod
    def has_synced(self) -> bool:
        """True once the first complete listing is available."""
        ...


class StaticNodeSource(NodeSource):
    """A fixed set of nodes, synced from the start."""

    def __init__(self, nodes: Iterable[NodeRef]):
        self._nodes = tuple(nodes)

    def list_nodes(self) -> List[NodeRef]:
        return list(self._nodes)

    def has_synced(self) -> bool:
        return True


def parse_node_spec(spec: str, default_port: int = DEFAULT_KUBELET_PORT) -> NodeRef:
    """Parse ``name=address[:port]`` or ``address[:port]``.

    IPv6 addresses with a port must be bracketed: ``n1=[fd00::1]:10250``.
    """
    spec = spec.strip()
    if not spec:
        raise ValueError("empty node spec")

    name, sep, target = spec.partition("=")
    if not sep:
        target = name

    port = default_port
    if target.startswith("["):
        end = target.find("]")
        if end == -1:
            raise ValueError(f"unterminated IPv6 address in {spec!r}")
        address = target[1:end]
        rest = target[end + 1:]
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"bad node spec {spec!r}")
            port = int(rest[1:])
    elif target.count(":") == 1:
        address, port_str = target.split(":")
        port = int(port_str)
    else:
        address = target

    if not sep:
        name = address
    if not name or not address:
        raise ValueError(f"bad node spec {spec!r}")
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in {spec!r}")
    return NodeRef(name=name, address=address, port=port)


class FileNodeSource(NodeSource):
    """Reads a node list file on every snapshot so membership can change live.

    One node per line in ``parse_node_spec`` format; blank lines and ``#``
    comments are ignored. A read or parse failure keeps serving the last
    good snapshot.
    """

    def __init__(self, path: str, default_port: int = DEFAULT_KUBELET_PORT):
        self._path = Path(path)
        self._default_port = default_port
        self._lock = threading.Lock()
        self._nodes: Optional[List[NodeRef]] = None

    def _load(self) -> List[NodeRef]:
        nodes = []
        for lineno, line in enumerate(self._path.read_text().splitlines(), start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            try:
                nodes.append(parse_node_spec(line, self._default_port))
            except ValueError as e:
                raise ValueError(f"{self._path}:{lineno}: {e}") from e
        return nodes

    def _refresh(self) -> None:
        try:
            nodes = self._load()
        except (OSError, ValueError) as e:
            if self._nodes is None:
                log.debug("Node list not available yet: %s", e)
            else:
                log.warning("Failed to reload node list, keeping %d known nodes: %s",
                            len(self._nodes), e)
            return
        with self._lock:
            if self._nodes is None:
                log.info("Initial node list loaded from %s: %d nodes", self._path, len(nodes))
            self._nodes = nodes

    def list_nodes(self) -> List[NodeRef]:
        self._refresh()
        with self._lock:
            return list(self._nodes or [])

    def has_synced(self) -> bool:
        with self._lock:
            synced = self._nodes is not None
        if not synced:
            self._refresh()
            with self._lock:
                synced = self._nodes is not None
        return synced
