from __future__ import annotations

import logging
from typing import Any, Protocol

from ci_script.models import Repository
from ci_script.sandbox.engine import Engine

_LOGGER = logging.getLogger(__name__)


class CommentPoster(Protocol):
    def create_comment(self, repository: Repository, issue_number: int, body: str) -> Any:
        ...


class IssueHandle:
    """The issue (or pull request) a job was started from."""

    def __init__(self, github: CommentPoster, repository: Repository, number: int) -> None:
        self._github = github
        self._repository = repository
        self.number = number

    def comment(self, text: Any) -> None:
        self._github.create_comment(self._repository, self.number, str(text))


def register(engine: Engine) -> None:
    engine.register_type(IssueHandle, "Issue")
    engine.register_fn(IssueHandle, "comment", IssueHandle.comment)
    engine.register_get(IssueHandle, "number", lambda issue: issue.number)


__all__ = ["CommentPoster", "IssueHandle", "register"]
