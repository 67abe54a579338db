from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

TEXT_PLAIN = "text/plain; charset=utf-8"


def _no_kinds() -> Sequence[str]:
    return ()


class _HealthHandler(BaseHTTPRequestHandler):
    """Serve ``/healthz``, ``/readyz`` and ``/metrics`` for the operator.

    ``/readyz`` answers 503 until every watched kind has finished its initial
    list, and names the kinds listed so far, e.g.
    ``ready=false listed=PulseProDeployment``.
    """

    ready_event: threading.Event
    listed_kinds: Callable[[], Sequence[str]]

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[int, bytes]:
        ready = self.ready_event.is_set()
        listed = ",".join(self.listed_kinds())
        body = f"ready={'true' if ready else 'false'} listed={listed}"
        return (200 if ready else 503), body.encode("utf-8")

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok", TEXT_PLAIN)
        elif self.path == "/readyz":
            status, body = self._readiness()
            self._respond(status, body, TEXT_PLAIN)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("pulsepro.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    listed_kinds: Callable[[], Sequence[str]] | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness state.

    The stdlib server builds handlers without constructor arguments, so the
    event and the listed-kinds callable live on a per-server subclass.
    """
    kinds_fn = listed_kinds or _no_kinds

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        listed_kinds = staticmethod(kinds_fn)  # type: ignore[assignment]

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    listed_kinds: Callable[[], Sequence[str]] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler = make_health_handler(ready, listed_kinds)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
