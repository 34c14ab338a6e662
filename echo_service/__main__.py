from __future__ import annotations

import sys
from typing import Optional, Sequence

from .config import load_config
from .log import configure_logging
from .server import create_server
from .shutdown import ShutdownToken, install_interrupt_handler, run_until_shutdown


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = load_config(argv)
    logger = configure_logging()
    server = create_server(config, logger)

    token = ShutdownToken()
    install_interrupt_handler(token)

    sys.exit(run_until_shutdown(server, token, config.graceful_timeout, logger))


if __name__ == "__main__":
    main()
