from __future__ import annotations

import argparse
from dataclasses import dataclass
import os
import re
import sys
from typing import Optional, Sequence, Tuple

DEFAULT_ADDR = "0.0.0.0:8080"
DEFAULT_GRACEFUL_TIMEOUT = "15s"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

# Largest duration a signed 64-bit nanosecond count can hold.
MAX_DURATION = 9223372036.854775807


@dataclass(frozen=True)
class Config:
    host: str
    port: int
    graceful_timeout: float
    read_timeout: float = 15.0
    write_timeout: float = 15.0
    idle_timeout: float = 60.0

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_duration(value: str) -> float:
    """Parse a duration such as ``15s``, ``1m30s`` or ``250ms`` into seconds.

    A bare ``0`` is accepted; any other number needs a unit.
    """
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        if text[0] == "-":
            sign = -1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if total > MAX_DURATION:
        raise ValueError(f"invalid duration {value!r}")
    return sign * total


def parse_address(value: str) -> Tuple[str, int]:
    text = value.strip()
    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
        if not sep:
            raise ValueError(f"invalid address {value!r}")
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            raise ValueError(f"invalid address {value!r}")
        if ":" in host:
            raise ValueError(f"invalid address {value!r}: IPv6 hosts must be bracketed")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in address {value!r}") from None
    if port < 0 or port > 65535:
        raise ValueError(f"port in address {value!r} must be between 0 and 65535")
    return host or "0.0.0.0", port


def _fail(msg: str) -> None:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="echo-service",
        description="Liveness and echo HTTP server with graceful shutdown on SIGINT.",
    )
    parser.add_argument(
        "-graceful-timeout",
        "--graceful-timeout",
        dest="graceful_timeout",
        default=_get_env("ECHO_GRACEFUL_TIMEOUT", DEFAULT_GRACEFUL_TIMEOUT),
        help="the duration for which the server gracefully waits for existing "
        "connections to finish - e.g. 15s or 1m",
    )
    parser.add_argument(
        "-addr",
        "--addr",
        dest="addr",
        default=_get_env("ECHO_ADDR", DEFAULT_ADDR),
        help="host:port to listen on (default %(default)s)",
    )
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> Config:
    args = _build_parser().parse_args(argv)

    try:
        graceful_timeout = parse_duration(args.graceful_timeout)
    except ValueError as exc:
        _fail(f"-graceful-timeout: {exc}")
    if graceful_timeout < 0:
        _fail("-graceful-timeout must not be negative")

    try:
        host, port = parse_address(args.addr)
    except ValueError as exc:
        _fail(f"-addr: {exc}")

    return Config(host=host, port=port, graceful_timeout=graceful_timeout)
