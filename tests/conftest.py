from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from ci_script.models import Issue, Job, Repository, User

GIT_IDENTITY = ["-c", "user.name=Test User", "-c", "user.email=test@example.com"]


def git(*args: str, cwd: Path) -> str:
    proc = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=str(cwd),
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    return proc.stdout.strip()


@dataclass
class Origin:
    bare: Path
    work: Path
    pr_sha: str

    def push_pr_commit(self, filename: str, content: str) -> str:
        """Add a commit to the pull request head and return its sha."""
        (self.work / filename).write_text(content)
        git("add", filename, cwd=self.work)
        git("commit", "-m", f"update {filename}", cwd=self.work)
        git("push", "--force", "origin", "HEAD:refs/pull/1/head", cwd=self.work)
        self.pr_sha = git("rev-parse", "HEAD", cwd=self.work)
        return self.pr_sha


@pytest.fixture
def origin(tmp_path: Path) -> Origin:
    """A bare origin with a ``main`` branch and pull request #1."""
    bare = tmp_path / "origin.git"
    git("init", "--bare", str(bare), cwd=tmp_path)
    work = tmp_path / "upstream-work"
    git("clone", str(bare), str(work), cwd=tmp_path)

    (work / "README.md").write_text("initial\n")
    (work / ".gitignore").write_text("target/\n")
    git("add", "README.md", ".gitignore", cwd=work)
    git("commit", "-m", "init", cwd=work)
    git("branch", "-M", "main", cwd=work)
    git("push", "-u", "origin", "main", cwd=work)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)

    git("checkout", "-b", "feature", cwd=work)
    (work / "Cargo.toml").write_text('[package]\nname = "demo"\nversion = "0.3.1"\n')
    git("add", "Cargo.toml", cwd=work)
    git("commit", "-m", "add manifest", cwd=work)
    git("push", "origin", "HEAD:refs/pull/1/head", cwd=work)
    pr_sha = git("rev-parse", "HEAD", cwd=work)
    return Origin(bare=bare, work=work, pr_sha=pr_sha)


def make_job(
    clone_url: str = "https://github.com/octo/demo.git",
    command: Optional[List[str]] = None,
    *,
    number: int = 1,
    issue_author: str = "alice",
) -> Job:
    repository = Repository(
        id=42,
        name="demo",
        url="https://api.github.com/repos/octo/demo",
        owner=User(login="octo"),
        clone_url=clone_url,
    )
    issue = Issue(number=number, user=User(login=issue_author), title="Speed it up")
    return Job(
        command=["bench.cis"] if command is None else command,
        repository=repository,
        issue=issue,
        user=User(login="bob"),
    )


@dataclass
class FakeGitHub:
    """Records GitHub calls instead of making them."""

    token: Optional[str] = None
    fail_comments: bool = False
    comments: List[Dict[str, Any]] = field(default_factory=list)
    pulls: List[Dict[str, Any]] = field(default_factory=list)

    def for_repository(self, repository: Repository) -> "FakeGitHub":
        return self

    def create_comment(self, repository: Repository, issue_number: int, body: str) -> Dict[str, Any]:
        if self.fail_comments:
            raise RuntimeError("comment endpoint unavailable")
        self.comments.append(
            {"repo": repository.full_name, "issue": issue_number, "body": body}
        )
        return {"id": len(self.comments)}

    def default_branch(self, repository: Repository) -> str:
        return "main"

    def create_pull_request(
        self, repository: Repository, *, title: str, head: str, base: str, body: str = ""
    ) -> Dict[str, Any]:
        self.pulls.append(
            {"repo": repository.full_name, "title": title, "head": head, "base": base, "body": body}
        )
        return {"html_url": f"https://github.com/{repository.full_name}/pull/{len(self.pulls) + 1}"}

    def close(self) -> None:
        pass


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()
