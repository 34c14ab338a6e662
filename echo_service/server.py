from __future__ import annotations

import contextlib
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import io
import json
import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type
from urllib.parse import urlsplit

import ulid

from .config import Config

ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD")
JSON_CONTENT_TYPE = "application/json"
LIVENESS_BODY = b'{"alive": true}'
MAX_LINE = 65537
MAX_HEADER_LINES = 101
READ_CHUNK = 65536

# Connection states, tracked for the drain.
NEW = "new"
ACTIVE = "active"
IDLE = "idle"

# A connection that never sent a byte is treated as idle once it is this old.
NEW_CONNECTION_GRACE = 5.0
DRAIN_POLL_INTERVAL = 0.5

_TOKEN_CHARS = frozenset("!#$%&'*+-.^_`|~0123456789"
                         "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")

RouteHandler = Callable[[bytes], bytes]


def liveness(body: bytes) -> bytes:
    # Dependency checks (database, cache) would be reported here as well.
    return LIVENESS_BODY


def echo(body: bytes) -> bytes:
    return body


DEFAULT_ROUTES: Dict[str, RouteHandler] = {
    "/": liveness,
    "/echo": echo,
}


def canonical_header_key(key: str) -> str:
    """``x-request-id`` -> ``X-Request-Id``; keys with non-token characters are left alone."""
    if not key or any(c not in _TOKEN_CHARS for c in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


class EchoServer(ThreadingHTTPServer):
    """Threaded HTTP server that can stop accepting and drain in-flight requests.

    Binding is deferred to :meth:`listen` so that a failed bind can be logged
    from the serving thread instead of aborting construction.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self, config: Config, handler_class: Type[BaseHTTPRequestHandler],
                 logger: logging.Logger) -> None:
        if ":" in config.host:
            self.address_family = socket.AF_INET6
        super().__init__((config.host, config.port), handler_class, bind_and_activate=False)
        self.config = config
        self.logger = logger
        self._state = threading.Condition()
        # connection -> (state, monotonic time of the last state change)
        self._connections: Dict[socket.socket, Tuple[str, float]] = {}
        self._listening = False
        self._serving = False
        self._closing = False
        self._draining = False

    @property
    def draining(self) -> bool:
        with self._state:
            return self._draining

    def listen(self) -> None:
        with self._state:
            if self._listening:
                return
            self.server_bind()
            self.server_activate()
            self._listening = True

    def serve(self) -> None:
        with self._state:
            if self._closing:
                return
        try:
            self.listen()
        except OSError as exc:
            self.logger.error("listen tcp %s: %s", self.config.address, exc)
            return
        with self._state:
            if self._closing:
                return
            self._serving = True
        host, port = self.server_address[:2]
        self.logger.info("listening on %s:%s", host, port)
        self.serve_forever(poll_interval=0.1)
        self.logger.info("http: Server closed")

    def graceful_shutdown(self, timeout: float) -> bool:
        """Stop accepting, then wait up to ``timeout`` seconds for in-flight requests.

        Returns True when every request finished before the deadline. Only the
        first call does anything; later calls return True immediately.
        """
        with self._state:
            if self._closing:
                return True
            self._closing = True
            serving = self._serving
        if serving:
            self.shutdown()
        self.server_close()
        return self._drain(timeout)

    def _drain(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._state:
            self._draining = True
            while True:
                now = time.monotonic()
                pending = False
                for conn, (state, since) in list(self._connections.items()):
                    if state == IDLE or (state == NEW and now - since > NEW_CONNECTION_GRACE):
                        _close_connection(conn)
                    else:
                        pending = True
                if not pending:
                    return True
                remaining = deadline - now
                if remaining <= 0:
                    return False
                self._state.wait(min(remaining, DRAIN_POLL_INTERVAL))

    def in_flight(self) -> int:
        with self._state:
            return sum(1 for state, _ in self._connections.values() if state == ACTIVE)

    def open_connections(self) -> int:
        with self._state:
            return len(self._connections)

    def process_request_thread(self, request: Any, client_address: Any) -> None:
        with self._state:
            self._connections[request] = (NEW, time.monotonic())
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._state:
                self._connections.pop(request, None)
                self._state.notify_all()

    def request_started(self, conn: socket.socket) -> None:
        with self._state:
            self._connections[conn] = (ACTIVE, time.monotonic())

    def request_finished(self, conn: socket.socket) -> bool:
        with self._state:
            if conn in self._connections:
                self._connections[conn] = (IDLE, time.monotonic())
            self._state.notify_all()
            return self._draining


def _close_connection(conn: socket.socket) -> None:
    with contextlib.suppress(OSError):
        conn.shutdown(socket.SHUT_RDWR)


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


def create_server(config: Config, logger: logging.Logger,
                  routes: Optional[Mapping[str, RouteHandler]] = None) -> EchoServer:
    route_table: Dict[str, RouteHandler] = dict(DEFAULT_ROUTES if routes is None else routes)

    class Handler(BaseHTTPRequestHandler):
        """Serves one connection.

        The idle timeout covers the wait for the first byte of each request.
        From that byte on, the read timeout is a deadline for the request line,
        headers and body; the write timeout is a deadline, counted from the end
        of the headers, for producing the response. Every socket operation
        waits only for the time left.
        """

        server: EchoServer
        server_version = "echo-service/1"
        sys_version = ""
        protocol_version = "HTTP/1.1"
        timeout = config.idle_timeout

        _busy = False
        _read_deadline = 0.0
        _write_deadline = 0.0

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug("%s - %s", self.address_string(), format % args)

        def log_request(self, code: Any = "-", size: Any = "-") -> None:
            return

        def _arm(self, deadline: float) -> None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("deadline exceeded")
            self.connection.settimeout(remaining)

        def _readline(self, deadline: float, limit: int = MAX_LINE) -> bytes:
            line = b""
            while not line.endswith(b"\n") and len(line) < limit:
                self._arm(deadline)
                buffered = self.rfile.peek(1)
                if not buffered:
                    break
                end = buffered.find(b"\n")
                take = len(buffered) if end < 0 else end + 1
                line += self.rfile.read(min(take, limit - len(line)))
            return line

        def _read_exact(self, size: int, deadline: float) -> bytes:
            data = b""
            while len(data) < size:
                self._arm(deadline)
                chunk = self.rfile.read1(min(size - len(data), READ_CHUNK))
                if not chunk:
                    break
                data += chunk
            return data

        def handle_one_request(self) -> None:
            try:
                self.connection.settimeout(config.idle_timeout)
                if not self.rfile.peek(1):
                    self.close_connection = True
                    return
                self._busy = True
                self.server.request_started(self.connection)
                self._read_deadline = time.monotonic() + config.read_timeout

                self.raw_requestline = self._readline(self._read_deadline)
                if len(self.raw_requestline) > MAX_LINE - 1:
                    self.requestline = ""
                    self.request_version = ""
                    self.command = ""
                    self.send_error(HTTPStatus.REQUEST_URI_TOO_LONG)
                    return
                if not self.parse_request():
                    return
                self._write_deadline = time.monotonic() + config.write_timeout
                getattr(self, "do_" + self.command)()
                self.wfile.flush()
            except OSError as exc:
                logger.debug("closing connection from %s: %s", self.address_string(), exc)
                self.close_connection = True
            finally:
                if self._busy:
                    self._busy = False
                    if self.server.request_finished(self.connection):
                        self.close_connection = True

        def parse_request(self) -> bool:
            # Read the whole head under the read deadline, then let the base
            # class parse it from memory.
            head = []
            for _ in range(MAX_HEADER_LINES):
                line = self._readline(self._read_deadline)
                head.append(line)
                if line in (b"\r\n", b"\n", b"") or len(line) >= MAX_LINE:
                    break
            rfile, self.rfile = self.rfile, io.BytesIO(b"".join(head))
            try:
                return super().parse_request()
            finally:
                self.rfile = rfile

        def __getattr__(self, name: str) -> Any:
            # Any other method reaches the router so known paths answer 405.
            if name.startswith("do_"):
                return self._dispatch
            raise AttributeError(name)

        def do_GET(self) -> None:
            self._dispatch()

        def do_POST(self) -> None:
            self._dispatch()

        def do_PUT(self) -> None:
            self._dispatch()

        def do_DELETE(self) -> None:
            self._dispatch()

        def do_OPTIONS(self) -> None:
            self._dispatch()

        def do_HEAD(self) -> None:
            self._dispatch()

        def _send(self, status: int, body: bytes, content_type: Optional[str], request_id: str) -> None:
            self.send_response(status)
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.send_header("X-Request-Id", request_id)
            if self.server.draining:
                self.send_header("Connection", "close")
            self._arm(self._write_deadline)
            self.end_headers()
            if self.command != "HEAD":
                self._arm(self._write_deadline)
                self.wfile.write(body)

        def _read_body(self) -> bytes:
            try:
                if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
                    return self._read_chunked()
                length = int(self.headers.get("Content-Length") or 0)
                if length <= 0:
                    return b""
                return self._read_exact(length, self._read_deadline)
            except (OSError, ValueError):
                self.close_connection = True
                return b""

        def _read_chunked(self) -> bytes:
            chunks = []
            while True:
                size_line = self._readline(self._read_deadline)
                size = int(size_line.split(b";", 1)[0].strip(), 16)
                if size == 0:
                    break
                chunk = self._read_exact(size, self._read_deadline)
                if len(chunk) < size:
                    raise ValueError("truncated chunk")
                chunks.append(chunk)
                self._readline(self._read_deadline)
            while True:
                trailer = self._readline(self._read_deadline)
                if trailer in (b"\r\n", b"\n", b""):
                    break
            return b"".join(chunks)

        def _log_request(self, body: bytes) -> None:
            logger.info("")
            logger.info("%s", self.path)
            logger.info("%s", self.command)
            for key in dict.fromkeys(canonical_header_key(k) for k in self.headers.keys()):
                values = self.headers.get_all(key) or []
                logger.info("%s: [%s]", _quote(key), " ".join(_quote(v) for v in values))
            logger.info("%s", body.decode("utf-8", errors="replace"))

        def _dispatch(self) -> None:
            start_ms = _now_ms()
            request_id = self.headers.get("X-Request-Id") or str(ulid.new())
            status: Optional[int] = None
            path = urlsplit(self.path).path

            try:
                route = route_table.get(path)
                if route is None:
                    status = 404
                    self._read_body()
                    self._send(status, b"404 page not found\n", "text/plain; charset=utf-8", request_id)
                    return
                if self.command not in ALLOWED_METHODS:
                    status = 405
                    self._read_body()
                    self._send(status, b"", None, request_id)
                    return

                body = self._read_body()
                self._log_request(body)
                response = route(body)
                status = 200
                self._send(status, response, JSON_CONTENT_TYPE, request_id)

            except OSError as exc:
                self.close_connection = True
                logger.debug("connection error request_id=%s: %s", request_id, exc)
            except Exception:
                logger.exception("unhandled error request_id=%s path=%s", request_id, path)
                if status is None:
                    status = 500
                    self._send(status, b"{}", JSON_CONTENT_TYPE, request_id)
                self.close_connection = True
            finally:
                latency_ms = _now_ms() - start_ms
                logger.info(
                    "request_id=%s method=%s path=%s status=%s latency_ms=%s",
                    request_id, self.command, path, status, latency_ms,
                )

    return EchoServer(config, Handler, logger)
