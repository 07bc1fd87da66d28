"""
Prometheus metrics for the integrity monitor.
"""

import logging
import threading
from typing import Dict, Optional, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

logger = logging.getLogger(__name__)

COUNTERS = {
    "events_create_total": "Files created",
    "events_modify_total": "Files modified",
    "events_delete_total": "Files deleted",
    "events_rename_total": "Files renamed",
    "events_suppressed_total": "Settled changes whose content matched the baseline",
    "reconcile_errors_total": "Changes that could not be reconciled",
    "overflow_rescans_total": "Subtree rescans forced by lost notifications",
}

GAUGES = {
    "tracked_files": "Currently tracked files",
}


class _QuietHandler(WSGIRequestHandler):
    """Request handler that does not write access lines to stderr."""

    def log_message(self, format, *args):
        pass


class IntegrityMetrics:
    """
    Counters and gauges for one monitor instance.

    Each instance owns its registry, so several monitors (or tests) in one
    process do not collide.
    """

    def __init__(self):
        self.registry = CollectorRegistry()
        self._counters: Dict[str, Counter] = {
            name: Counter(name, doc, registry=self.registry) for name, doc in COUNTERS.items()
        }
        self._gauges: Dict[str, Gauge] = {
            name: Gauge(name, doc, registry=self.registry) for name, doc in GAUGES.items()
        }
        self._server: Optional[WSGIServer] = None
        self._server_thread: Optional[threading.Thread] = None

    def increment(self, name: str, amount: int = 1) -> None:
        self._counters[name].inc(amount)

    def set(self, name: str, value: float) -> None:
        self._gauges[name].set(value)

    def adjust(self, name: str, delta: float) -> None:
        self._gauges[name].inc(delta)

    def value(self, name: str) -> float:
        """Current value of a counter or gauge."""
        if name not in self._counters and name not in self._gauges:
            raise KeyError(name)
        return self.registry.get_sample_value(name) or 0.0

    def render(self) -> bytes:
        """Text exposition format."""
        return generate_latest(self.registry)

    def _app(self):
        metrics_app = make_wsgi_app(self.registry)

        def app(environ, start_response):
            if environ.get("PATH_INFO") == "/healthz":
                start_response("200 OK", [("Content-Type", "text/plain")])
                return [b"ok"]
            return metrics_app(environ, start_response)

        return app

    def serve(self, bind: Tuple[str, int]) -> Tuple[str, int]:
        """
        Start the HTTP exposition endpoint (``/metrics`` and ``/healthz``).

        Args:
            bind: (host, port); port 0 picks a free port

        Returns:
            The address actually bound
        """
        host, port = bind
        self._server = make_server(
            host, port, self._app(),
            server_class=ThreadingWSGIServer,
            handler_class=_QuietHandler,
        )
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="metrics-http", daemon=True
        )
        self._server_thread.start()
        address = self._server.server_address[:2]
        logger.info(f"Metrics server listening on http://{address[0]}:{address[1]}/ (paths: /metrics, /healthz)")
        return address

    def shutdown(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._server_thread is not None:
            self._server_thread.join(timeout=5.0)
        self._server = None
        self._server_thread = None
