from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Callable, Optional

from .server import EchoServer


class ShutdownToken:
    """Single-shot event that starts the shutdown sequence.

    Tripping it more than once has no further effect, so a second Ctrl+C while
    draining is ignored.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def trip(self) -> None:
        self._event.set()

    @property
    def tripped(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def install_interrupt_handler(token: ShutdownToken) -> Callable[..., Any]:
    """Trip ``token`` on SIGINT and return the previous handler.

    SIGTERM and SIGQUIT are left alone and still end the process without a drain.
    """

    def _on_interrupt(*_args: object) -> None:
        # Event.set takes a lock the interrupted main thread may be holding.
        threading.Thread(target=token.trip, name="sigint", daemon=True).start()

    return signal.signal(signal.SIGINT, _on_interrupt)


def run_until_shutdown(server: EchoServer, token: ShutdownToken, graceful_timeout: float,
                       logger: logging.Logger) -> int:
    thread = threading.Thread(target=server.serve, name="http-listener", daemon=True)
    thread.start()

    # Block until the token trips.
    token.wait()

    # Returns at once when idle, otherwise waits for in-flight requests up to
    # the deadline. The outcome never changes the exit code.
    drained = server.graceful_shutdown(graceful_timeout)
    if not drained:
        logger.debug("graceful timeout of %ss elapsed with %d request(s) in flight",
                     graceful_timeout, server.in_flight())
    logger.info("shutting down")
    return 0
