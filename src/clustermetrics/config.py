"""
Process-wide settings: scrape cadence and how to talk to kubelets.

Both are validated when constructed so a bad combination never reaches
the refresh loop.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

log = logging.getLogger(__name__)

DEFAULT_METRIC_RESOLUTION = 60.0
DEFAULT_SCRAPE_TIMEOUT = 10.0
DEFAULT_RETENTION_MULTIPLIER = 3

DEFAULT_KUBELET_PORT = 10250
DEFAULT_METRICS_PATH = "/metrics/resource"
DEFAULT_MAX_BODY_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class ResolutionConfig:
    """Scrape period and per-node deadline, in seconds."""

    metric_resolution: float = DEFAULT_METRIC_RESOLUTION
    scrape_timeout: float = DEFAULT_SCRAPE_TIMEOUT
    retention_multiplier: int = DEFAULT_RETENTION_MULTIPLIER

    def __post_init__(self):
        if self.metric_resolution <= 0:
            raise ValueError(f"metric resolution must be positive, got {self.metric_resolution}")
        if self.scrape_timeout <= 0:
            raise ValueError(f"scrape timeout must be positive, got {self.scrape_timeout}")
        # A timeout longer than the period would let scrapes overlap
        if self.scrape_timeout > self.metric_resolution:
            raise ValueError(
                f"scrape timeout ({self.scrape_timeout}s) must not exceed "
                f"metric resolution ({self.metric_resolution}s)"
            )
        if self.retention_multiplier < 2:
            raise ValueError("retention multiplier must be at least 2")

    @property
    def retention(self) -> float:
        """Age after which an entity that stopped reporting is evicted."""
        return self.metric_resolution * self.retention_multiplier


class BearerTokenFileAuth(httpx.Auth):
    """Bearer auth that re-reads the token file on every request.

    Projected service account tokens are rotated on disk, so the header
    has to follow the file. If a later read fails the last token read is
    sent instead.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._token = self._read()

    def _read(self) -> str:
        return self._path.read_text().strip()

    def token(self) -> str:
        try:
            token = self._read()
        except OSError as e:
            log.warning("Could not re-read token file %s, using the previous token: %s", self._path, e)
            with self._lock:
                return self._token
        with self._lock:
            self._token = token
        return token

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {self.token()}"
        yield request


@dataclass(frozen=True)
class KubeletClientConfig:
    scheme: str = "https"
    default_port: int = DEFAULT_KUBELET_PORT
    metrics_path: str = DEFAULT_METRICS_PATH
    insecure_skip_verify: bool = False
    ca_file: Optional[str] = None
    token_file: Optional[str] = None
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES

    def __post_init__(self):
        if self.scheme not in ("http", "https"):
            raise ValueError(f"unsupported kubelet scheme: {self.scheme!r}")
        if not self.metrics_path.startswith("/"):
            raise ValueError(f"metrics path must start with '/': {self.metrics_path!r}")

    def _verify(self):
        if self.insecure_skip_verify:
            log.warning("TLS verification of kubelet certificates is disabled")
            return False
        if self.ca_file:
            return self.ca_file
        return True

    def _auth(self) -> Optional[BearerTokenFileAuth]:
        if not self.token_file:
            return None
        return BearerTokenFileAuth(self.token_file)

    def build_client(self) -> httpx.Client:
        """One client shared by every scrape worker; httpx.Client is thread-safe."""
        return httpx.Client(
            verify=self._verify(),
            auth=self._auth(),
            follow_redirects=False,
        )
