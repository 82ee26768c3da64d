from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics`` for the controller process.

    ``/readyz`` succeeds only while the controller is ``Running``: before the
    cache has synced and once shutdown begins it answers 503 so traffic and
    rollouts wait on a controller that is actually reconciling.
    """

    ready_event: threading.Event
    state_provider: Callable[[], str] | None = None

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness_body(self, ready: bool) -> bytes:
        parts = [f"ready={'true' if ready else 'false'}"]
        provider = type(self).state_provider
        if provider is not None:
            parts.append(f"state={provider()}")
        return " ".join(parts).encode()

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready = self.ready_event.is_set()
            self._respond(200 if ready else 503, self._readiness_body(ready))
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    ready: threading.Event, state: Callable[[], str] | None = None
) -> type[_ProbeHandler]:
    """Return a handler class bound to the controller's readiness event.

    The stdlib server instantiates handlers itself, so the bindings live on
    a per-server subclass.
    """
    return type(
        "_BoundProbeHandler",
        (_ProbeHandler,),
        {"ready_event": ready, "state_provider": staticmethod(state) if state else None},
    )


def start_health_server(
    ready: threading.Event, port: int, state: Callable[[], str] | None = None
) -> ThreadingHTTPServer:
    """Start the probe and metrics server on a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, state))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
