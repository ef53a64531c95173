"""Dispatch loop: pull jobs one at a time and run them to completion."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

import httpx

from ci_script.api.config import Settings
from ci_script.capabilities.git import GitIdentity
from ci_script.checkout import DirectoryLeases, checkout
from ci_script.github import AppAuth, GitHubClient
from ci_script.models import Job
from ci_script.queue import JobQueue
from ci_script.runner import prepare_script

_LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 1.0
RETRY_DELAY_SECONDS = 2.0


class JobSource(Protocol):
    def next_job(self) -> Optional[Job]:
        """Return the next job, or None if none arrived in time."""


class LocalJobSource:
    """Pulls jobs straight from an in-process queue."""

    def __init__(self, queue: JobQueue, poll_seconds: float = DEFAULT_POLL_SECONDS) -> None:
        self.queue = queue
        self.poll_seconds = poll_seconds

    def next_job(self) -> Optional[Job]:
        watcher: Future = Future()
        self.queue.register_watcher(watcher)
        try:
            return watcher.result(timeout=self.poll_seconds)
        except FutureTimeout:
            # Gives the loop a chance to notice a stop request.
            return self.queue.discard_watcher(watcher)


class QueueClient:
    """Long-polls a reactor's ``/queue/remove`` endpoint over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        trimmed = base_url.rstrip("/")
        if not trimmed:
            raise ValueError("Queue base URL must not be empty")
        self.base_url = trimmed
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(timeout_seconds, connect=5.0),
        }
        if transport is not None:
            kwargs["transport"] = transport
        self._http = httpx.Client(**kwargs)

    def close(self) -> None:
        self._http.close()

    def next_job(self) -> Optional[Job]:
        try:
            response = self._http.post(
                f"{self.base_url}/queue/remove", params={"long_poll": "true"}
            )
        except httpx.ReadTimeout:
            return None
        if response.status_code in (204, 404):
            return None
        response.raise_for_status()
        return Job.model_validate(response.json())


def build_github_client(
    settings: Settings, transport: httpx.BaseTransport | None = None
) -> GitHubClient:
    app = None
    if settings.app_id is not None and settings.app_key:
        app = AppAuth(settings.app_id, settings.app_key)
    elif settings.github_token is None:
        _LOGGER.warning("No GitHub credentials configured; API calls are anonymous")
    return GitHubClient(
        token=settings.github_token,
        app=app,
        base_url=settings.github_api_url,
        transport=transport,
    )


class Dispatcher:
    """Runs jobs serially: checkout, prepare, run, report failures."""

    def __init__(
        self,
        source: JobSource,
        github: GitHubClient,
        settings: Settings,
        *,
        leases: Optional[DirectoryLeases] = None,
        clone_schemes: Sequence[str] = ("https",),
    ) -> None:
        self.source = source
        self.github = github
        self.settings = settings
        self.leases = leases if leases is not None else DirectoryLeases()
        self.clone_schemes = tuple(clone_schemes)

    def run(self, stop_event: threading.Event) -> None:
        _LOGGER.info("Dispatcher started")
        while not stop_event.is_set():
            try:
                job = self.source.next_job()
            except Exception as exc:
                _LOGGER.warning("Failed to retrieve job from queue: %s", exc)
                stop_event.wait(RETRY_DELAY_SECONDS)
                continue
            if job is None:
                continue
            self.process(job)
        _LOGGER.info("Dispatcher stopped")

    def process(self, job: Job) -> bool:
        """Run one job. Returns False if it failed (after reporting it)."""
        client = self.github
        try:
            client = self.github.for_repository(job.repository)
            self._execute(job, client)
        except Exception as exc:
            _LOGGER.warning("Error running job %s: %s", job.dir_name(), exc)
            self._report_failure(job, client, exc)
            return False
        _LOGGER.info("Job %s finished", job.dir_name())
        return True

    def _execute(self, job: Job, client: GitHubClient) -> None:
        root = Path(self.settings.repos_root)
        identity = GitIdentity(
            name=self.settings.git_author_name, email=self.settings.git_author_email
        )
        with self.leases.acquire(job.repo_dir(root)) as lease:
            checked = checkout(job, root, lease, token=client.token)
            runnable = prepare_script(
                checked,
                client,
                scripts_root=self.settings.scripts_root,
                cargo_bin=self.settings.cargo_bin,
                token=client.token,
                identity=identity,
                clone_schemes=self.clone_schemes,
            )
            runnable.run()

    def _report_failure(self, job: Job, client: GitHubClient, exc: Exception) -> None:
        try:
            client.create_comment(
                job.repository, job.issue.number, f"Error running job: {exc}"
            )
        except Exception as comment_exc:
            _LOGGER.warning(
                "Failed to comment on %s#%s: %s",
                job.repository.full_name,
                job.issue.number,
                comment_exc,
            )


__all__ = [
    "Dispatcher",
    "JobSource",
    "LocalJobSource",
    "QueueClient",
    "build_github_client",
]
