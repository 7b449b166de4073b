"""
Fake kubelet /metrics/resource servers for testing without a cluster.

    python -m clustermetrics.mock.fake_kubelet_server
    clustermetrics --nodes-file fake-nodes.txt --kubelet-scheme http
"""

from __future__ import annotations

import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer, ThreadingHTTPServer
from typing import List, Optional, Type

from clustermetrics.config import DEFAULT_METRICS_PATH
from clustermetrics.mock.generator import FakeCluster


class _ResourceMetricsHandler(BaseHTTPRequestHandler):
    # Filled in per server by make_handler()
    cluster: Optional[FakeCluster] = None
    node_name: str = ""
    delay_seconds: float = 0.0
    stall_seconds: float = 0.0
    status: int = 200
    body: Optional[bytes] = None

    def do_GET(self):
        if self.path != DEFAULT_METRICS_PATH:
            self.send_response(404)
            self.end_headers()
            return

        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        if self.body is not None:
            body = self.body
        else:
            body = self.cluster.render(self.node_name).encode()

        try:
            self.send_response(self.status)
            self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if self.stall_seconds:
                # Headers are out, the body hangs
                time.sleep(self.stall_seconds)
            self.wfile.write(body)
        except (BrokenPipeError, ConnectionResetError):
            pass  # client gave up (deadline)

    def log_message(self, format, *args):
        pass  # Suppress request logging noise


def make_handler(
    cluster: Optional[FakeCluster] = None,
    node_name: str = "",
    delay_seconds: float = 0.0,
    stall_seconds: float = 0.0,
    status: int = 200,
    body: Optional[bytes] = None,
) -> Type[_ResourceMetricsHandler]:
    """Handler class bound to one fake node, or to a canned response body."""
    return type("BoundResourceMetricsHandler", (_ResourceMetricsHandler,), {
        "cluster": cluster,
        "node_name": node_name,
        "delay_seconds": delay_seconds,
        "stall_seconds": stall_seconds,
        "status": status,
        "body": body,
    })


def start_server(handler: Type[BaseHTTPRequestHandler], host: str = "127.0.0.1",
                 port: int = 0) -> HTTPServer:
    """Serve in a daemon thread. Port 0 picks a free port (see server.server_address)."""
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def run_fake_cluster(nodes: int = 3, host: str = "127.0.0.1", base_port: int = 10250,
                     nodes_file: str = "fake-nodes.txt"):
    cluster = FakeCluster(nodes=nodes, address=host, base_port=base_port)
    servers: List[HTTPServer] = []
    for ref in cluster.node_refs():
        servers.append(start_server(make_handler(cluster, ref.name), host, ref.port))

    with open(nodes_file, "w") as f:
        for ref in cluster.node_refs():
            f.write(f"{ref.name}={ref.address}:{ref.port}\n")

    print(f"Fake kubelets for {nodes} nodes on {host}:{base_port}-{base_port + nodes - 1}")
    print(f"Node list written to {nodes_file}")
    print("Press Ctrl+C to stop.\n")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    for server in servers:
        server.shutdown()
        server.server_close()
    print("\nServers stopped.")


if __name__ == "__main__":
    run_fake_cluster()
