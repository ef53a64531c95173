#!/usr/bin/env python3
"""Run the webhook reactor with an in-process dispatcher."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import threading
from typing import Optional

import uvicorn

from ci_script.api.app import create_app
from ci_script.api.config import get_settings
from ci_script.dispatch import Dispatcher, LocalJobSource, build_github_client

_LOGGER = logging.getLogger("ci_script.reactor")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--log-level", help="Log level (debug, info, warning, ...)")
    parser.add_argument(
        "--no-dispatcher",
        action="store_true",
        help="Only queue jobs; leave running them to remote workers.",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    overrides = {
        "bind_host": args.host,
        "bind_port": args.port,
        "log_level": args.log_level,
    }
    settings = dataclasses.replace(
        settings, **{key: value for key, value in overrides.items() if value is not None}
    )
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.webhook_secret:
        _LOGGER.warning("No webhook secret configured; every webhook will be rejected")

    app = create_app(settings)
    stop_event = threading.Event()
    worker: Optional[threading.Thread] = None
    if not args.no_dispatcher:
        dispatcher = Dispatcher(
            LocalJobSource(app.state.queue), build_github_client(settings), settings
        )
        worker = threading.Thread(target=dispatcher.run, args=(stop_event,), daemon=True)
        worker.start()

    try:
        uvicorn.run(
            app,
            host=settings.bind_host,
            port=settings.bind_port,
            log_level=settings.log_level,
        )
    finally:
        stop_event.set()
        if worker is not None:
            worker.join(timeout=5.0)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
