"""Wire models shared by the webhook, the queue and the dispatch loop."""

from __future__ import annotations

import shlex
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ci_script.errors import MissingRepositoryField


class User(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    login: str
    id: Optional[int] = None


class Issue(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    number: int
    user: User
    title: str = ""
    html_url: Optional[str] = None
    pull_request: Optional[Dict[str, Any]] = None


class Repository(BaseModel):
    """A GitHub repository with the fields this service cannot do without.

    GitHub marks ``owner`` and ``clone_url`` optional in its schema; the
    payloads we act on always carry them, so they are required here.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    url: str
    owner: User
    clone_url: str

    @property
    def full_name(self) -> str:
        return f"{self.owner.login}/{self.name}"

    @classmethod
    def from_github(cls, payload: Dict[str, Any]) -> Repository:
        owner = payload.get("owner")
        if not owner:
            raise MissingRepositoryField("owner")
        clone_url = payload.get("clone_url")
        if not clone_url:
            raise MissingRepositoryField("clone_url")
        for field in ("id", "name", "url"):
            if payload.get(field) in (None, ""):
                raise MissingRepositoryField(field)
        return cls(
            id=payload["id"],
            name=payload["name"],
            url=payload["url"],
            owner=User.model_validate(owner),
            clone_url=clone_url,
        )


class Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: List[str]
    repository: Repository
    issue: Issue
    # Comment author; the checkout directory is keyed on the issue author.
    user: Optional[User] = None

    def pr_branch(self) -> str:
        return f"pull/{self.issue.number}/head"

    def dir_name(self) -> str:
        return "_".join(
            [
                str(self.repository.id),
                str(self.issue.number),
                self.issue.user.login,
                self.repository.owner.login,
                self.repository.name,
            ]
        )

    def repo_dir(self, root: Path | str) -> Path:
        return Path(root) / self.dir_name()

    def queue_key(self) -> str:
        return f"{self.repository.name}_{' '.join(self.command)}_{time.time_ns()}"


def parse_command(body: str | None, prefix: str) -> Optional[List[str]]:
    """Return the command tokens of a bot comment, or None if it is not one.

    Only the first line counts; its first token must be exactly ``prefix``.
    """
    if not body or not prefix:
        return None
    first_line = body.split("\n", 1)[0].strip()
    if not first_line.startswith(prefix):
        return None
    rest = first_line[len(prefix) :]
    if rest and not rest[0].isspace():
        return None
    try:
        return shlex.split(rest)
    except ValueError:
        return rest.split()


__all__ = ["User", "Issue", "Repository", "Job", "parse_command"]
