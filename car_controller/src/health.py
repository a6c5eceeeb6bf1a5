from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints.

    ``/healthz`` fails once a worker or watch thread has died; ``/readyz`` passes
    only after every watch source finished its initial list.
    """

    ready_event: threading.Event
    live_check: Callable[[], bool]

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
            if self.live_check():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"controller threads stopped")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("car_controller.health").debug(fmt, *args)


def _always_live() -> bool:
    return True


def make_health_handler(
    ready: threading.Event, live: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and liveness check.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """
    check = live or _always_live

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        live_check = staticmethod(check)

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, live: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, live=live)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
