from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    ``/readyz`` is 200 only when every informer has synced and, with leader
    election enabled, this replica leads.
    """

    is_ready: Callable[[], bool]
    leader_event: threading.Event | None

    def _leading(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _reply(self, status: int, body: bytes, content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._reply(200, b"ok")
        elif path == "/leadz":
            if self._leading():
                self._reply(200, b"ok")
            else:
                self._reply(503, b"not leader")
        elif path == "/readyz":
            synced = type(self).is_ready()
            leading = self._leading()
            body = f"synced={str(synced).lower()} leader={str(leading).lower()}".encode()
            self._reply(200 if synced and leading else 503, body)
        elif path == "/metrics":
            self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._reply(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    is_ready: Callable[[], bool],
    port: int,
    leader: threading.Event | None = None,
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    handler = type(
        "BoundProbeHandler",
        (_ProbeHandler,),
        {"is_ready": staticmethod(is_ready), "leader_event": leader},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
