from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    pending_kinds: Callable[[], list[str] | None]

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
            # None: bootstrap has not completed yet.
            pending = type(self).pending_kinds()
            if pending is None:
                self._respond(503, b"initialised=false")
            elif pending:
                self._respond(503, f"pending={','.join(sorted(pending))}".encode())
            else:
                self._respond(200, b"ready=true")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("orchestrator.health").debug(fmt, *args)


def make_health_handler(pending_kinds: Callable[[], list[str] | None]) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness probe.

    *pending_kinds* returns ``None`` before bootstrap, otherwise the watch
    kinds whose initial listing is still outstanding.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.pending_kinds = staticmethod(pending_kinds)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    pending_kinds: Callable[[], list[str] | None], port: int
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(pending_kinds)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
