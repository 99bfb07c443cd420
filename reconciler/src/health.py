from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

StatusFn = Callable[[], tuple[bool, str]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    status_fn: StatusFn

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, detail = type(self).status_fn()
            self._respond(200 if ready else 503, detail.encode())
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            output = generate_latest()
            self._respond(200, output, "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reconciler.health").debug(fmt, *args)


def make_health_handler(status: StatusFn) -> type[_HealthHandler]:
    """Return a handler class bound to the *status* callable.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        status_fn = staticmethod(status)  # type: ignore[assignment]

    return _BoundHealthHandler


def start_health_server(status_fn: StatusFn, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(status_fn)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True, name="health-server").start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
