#!/usr/bin/env python3
"""Run jobs pulled from a remote reactor's queue."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Optional

from ci_script.api.config import get_settings
from ci_script.dispatch import Dispatcher, QueueClient, build_github_client

_LOGGER = logging.getLogger("ci_script.worker")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--queue-url", help="Base URL of the reactor")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    queue_url = args.queue_url or settings.queue_url
    if not queue_url:
        queue_url = f"http://{settings.bind_host}:{settings.bind_port}"
    _LOGGER.info("Pulling jobs from %s", queue_url)

    source = QueueClient(queue_url)
    dispatcher = Dispatcher(source, build_github_client(settings), settings)
    stop_event = threading.Event()

    def _handle_signal(signum, frame):  # pragma: no cover
        _LOGGER.info("Received signal %s, stopping worker...", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        dispatcher.run(stop_event)
    finally:
        source.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
