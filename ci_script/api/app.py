"""FastAPI reactor: GitHub webhook intake and the job queue endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import Future

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import ValidationError

from ci_script import __version__
from ci_script.api.config import Settings, get_settings
from ci_script.api.webhook import (
    COMMENT_EVENT,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    job_from_comment,
    verify_signature,
)
from ci_script.errors import CisError
from ci_script.queue import JobQueue

_LOGGER = logging.getLogger(__name__)

DISCONNECT_POLL_INTERVAL_SECONDS = 0.5
# Must stay below QueueClient's read timeout so an idle poll ends with 204
# before the worker gives up on the connection.
LONG_POLL_DEADLINE_SECONDS = 50.0


def create_app(
    settings: Settings | None = None,
    queue: JobQueue | None = None,
    *,
    long_poll_seconds: float = LONG_POLL_DEADLINE_SECONDS,
) -> FastAPI:
    app = FastAPI(title="ci-script reactor", version=__version__)
    job_queue = queue if queue is not None else JobQueue()
    app.state.queue = job_queue

    def _settings() -> Settings:
        return settings or get_settings()

    @app.get("/healthz")
    def healthz() -> dict[str, object]:
        return {"status": "ok", "version": __version__, "queued": len(job_queue)}

    @app.post("/", status_code=202)
    async def github_webhook(
        request: Request, settings: Settings = Depends(_settings)
    ) -> dict[str, str]:
        body = await request.body()
        if not verify_signature(
            settings.webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
        ):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

        event = request.headers.get(EVENT_HEADER, "")
        if event != COMMENT_EVENT:
            _LOGGER.debug("Ignoring %s event", event or "unnamed")
            return {"status": "ignored"}

        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
            job = job_from_comment(payload, settings.command_prefix)
        except (CisError, ValidationError, ValueError, KeyError, TypeError) as exc:
            _LOGGER.warning("Failed to parse payload: %s", exc)
            return {"status": "ignored"}

        if job is None:
            return {"status": "ignored"}
        key = job.queue_key()
        job_queue.add(key, job)
        return {"status": "queued", "key": key}

    @app.post("/queue/remove", response_model=None)
    async def remove_from_queue(
        request: Request, long_poll: bool = Query(False)
    ) -> dict | Response:
        job = job_queue.remove()
        if job is not None:
            return job.model_dump(mode="json")
        if not long_poll:
            raise HTTPException(status_code=404, detail="Queue is empty")

        watcher: Future = Future()
        job_queue.register_watcher(watcher)
        waiter = asyncio.wrap_future(watcher)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + long_poll_seconds
        delivered = False
        try:
            while True:
                remaining = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    {waiter}, timeout=min(DISCONNECT_POLL_INTERVAL_SECONDS, remaining)
                )
                if done:
                    job = waiter.result()
                    delivered = True
                    return job.model_dump(mode="json")
                if await request.is_disconnected():
                    _LOGGER.info("Long-poll client disconnected")
                    return Response(status_code=204)
                if loop.time() >= deadline:
                    _LOGGER.debug("Long-poll deadline reached with no job")
                    return Response(status_code=204)
        finally:
            if not delivered:
                leftover = job_queue.discard_watcher(watcher)
                if leftover is not None:
                    _LOGGER.info("Re-queueing job delivered to a departed client")
                    job_queue.add(leftover.queue_key(), leftover)

    return app


__all__ = ["create_app"]
