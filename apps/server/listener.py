"""TCP listener for the embedded HTTP server.

One request per connection, handled one connection at a time: read until the
request (headers + declared body) is complete, dispatch it, write the response,
close the socket. Built on `socketserver` so shutdown and address reuse come from
the standard library.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import threading
from dataclasses import dataclass

from apps.server.router import Router
from apps.server.wire import TransportError, encode_json_response, parse_request, request_complete

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5000
DEFAULT_MAX_REQUEST_BYTES = 1 << 20
DEFAULT_READ_TIMEOUT_S = 10.0
_RECV_SIZE = 64 * 1024


class StartupError(RuntimeError):
    """The listener could not bind its port."""


@dataclass(frozen=True)
class ListenerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    read_timeout_s: float = DEFAULT_READ_TIMEOUT_S


def read_request_bytes(sock: socket.socket, *, max_bytes: int) -> bytes:
    """Read one request from `sock`.

    Raises:
        TransportError: The peer closed or timed out before the headers and the
            declared body arrived, or the request exceeds `max_bytes`.
    """
    buf = bytearray()
    while not request_complete(bytes(buf)):
        try:
            data = sock.recv(_RECV_SIZE)
        except socket.timeout as exc:
            if buf:
                raise TransportError(f"timed out after {len(buf)} bytes of an incomplete request") from exc
            raise TransportError("timed out waiting for request") from exc
        if not data:
            if buf:
                raise TransportError(f"connection closed after {len(buf)} bytes of an incomplete request")
            raise TransportError("connection closed before a request was received")
        buf.extend(data)
        if len(buf) > max_bytes:
            raise TransportError(f"request exceeds {max_bytes} bytes")
    return bytes(buf)


class _ConnectionHandler(socketserver.BaseRequestHandler):
    server: "Listener"

    def handle(self) -> None:
        sock: socket.socket = self.request
        sock.settimeout(self.server.config.read_timeout_s)

        try:
            raw = read_request_bytes(sock, max_bytes=self.server.config.max_request_bytes)
        except (TransportError, OSError) as exc:
            logger.debug("dropping connection from %s: %s", self.client_address, exc)
            return

        request = parse_request(raw)
        if request is None:
            logger.info("malformed request from %s; closing", self.client_address)
            return

        # Streaming responses may stay open for minutes.
        sock.settimeout(None)
        sent = False

        def send(data: bytes) -> None:
            nonlocal sent
            sent = True
            sock.sendall(data)

        try:
            status = self.server.router.handle(request, send)
        except OSError as exc:
            logger.info("%s %s: connection lost: %s", request.method, request.path, exc)
            return
        except Exception:
            logger.exception("%s %s: handler failed", request.method, request.path)
            if not sent:
                try:
                    sock.sendall(encode_json_response(500, {"error": "internal server error"}))
                except OSError as exc:
                    logger.debug("could not report handler failure: %s", exc)
            return

        logger.info("%s %s -> %d", request.method, request.path, status)


class Listener(socketserver.TCPServer):
    """Single-threaded TCP server that hands each request to a `Router`."""

    allow_reuse_address = True

    def __init__(self, router: Router, *, config: ListenerConfig | None = None) -> None:
        self.router = router
        self.config = config or ListenerConfig()
        self._thread: threading.Thread | None = None
        try:
            super().__init__((self.config.host, self.config.port), _ConnectionHandler)
        except (OSError, OverflowError, ValueError) as exc:
            raise StartupError(f"cannot listen on {self.config.host}:{self.config.port}: {exc}") from exc

    @property
    def port(self) -> int:
        return int(self.server_address[1])

    def shutdown_request(self, request: socket.socket) -> None:  # type: ignore[override]
        # Half-close first so the peer sees EOF after the last byte of the response.
        try:
            request.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # peer already gone (ENOTCONN)
        self.close_request(request)

    def serve_in_background(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        thread = threading.Thread(target=self.serve_forever, name=f"pocketserve-listener-{self.port}", daemon=True)
        thread.start()
        self._thread = thread
        logger.info("listening on %s:%d", self.config.host, self.port)
        return thread

    def close(self) -> None:
        if self._thread is not None:
            self.shutdown()
            self._thread.join()
            self._thread = None
        self.server_close()
        logger.info("listener on port %d closed", self.port)
