"""Shared fixtures: in-process servers bound to ephemeral loopback ports."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Iterator, List, Mapping, Optional

import pytest

from echo_service.config import Config
from echo_service.server import EchoServer, RouteHandler, create_server


def make_config(graceful_timeout: float = 1.0, port: int = 0, **timeouts: float) -> Config:
    return Config(host="127.0.0.1", port=port, graceful_timeout=graceful_timeout, **timeouts)


def base_url(server: EchoServer) -> str:
    host, port = server.server_address[:2]
    return f"http://{host}:{port}"


def raw_request(server: EchoServer, payload: bytes, timeout: float = 5.0) -> bytes:
    """Send raw bytes and read until the server closes the connection."""
    host, port = server.server_address[:2]
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(payload)
        chunks = []
        while True:
            data = sock.recv(65536)
            if not data:
                break
            chunks.append(data)
    return b"".join(chunks)


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("tests.echo_service")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def start_server(logger: logging.Logger) -> Iterator[Callable[..., EchoServer]]:
    """Factory that builds, binds and serves a server; all are stopped on teardown."""
    started: List[EchoServer] = []

    def _start(routes: Optional[Mapping[str, RouteHandler]] = None,
               config: Optional[Config] = None) -> EchoServer:
        server = create_server(config or make_config(), logger, routes=routes)
        server.listen()
        threading.Thread(target=server.serve, daemon=True).start()
        started.append(server)
        return server

    yield _start

    for server in started:
        server.graceful_shutdown(0)
