"""Working-copy management for jobs.

A job maps to exactly one directory under the repositories root. The first
checkout clones it; later checkouts for the same issue reuse the clone and
force it to the current tip of the pull request.
"""

from __future__ import annotations

import base64
import logging
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from ci_script.errors import CheckoutError, CloneError, LeaseError, NoDirectory
from ci_script.models import Issue, Job, Repository

_LOGGER = logging.getLogger(__name__)


def auth_config(token: Optional[str]) -> List[str]:
    """Return ``git -c`` arguments that authenticate HTTPS remotes with ``token``."""
    if not token:
        return []
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
    return ["-c", f"http.extraHeader=Authorization: Basic {basic}"]


def run_git(
    args: Sequence[str],
    *,
    cwd: Path,
    logger: logging.Logger = _LOGGER,
    config: Sequence[str] = (),
) -> subprocess.CompletedProcess:
    """Run a git command in `cwd` and capture output.

    The caller must examine `returncode`. ``config`` holds ``-c`` options that
    may carry credentials, so it is never logged.
    """

    cmd = ["git", *args]
    logger.debug("Running git command: %s (cwd=%s)", " ".join(cmd), cwd)
    proc = subprocess.run(
        ["git", *config, *args],
        cwd=str(cwd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if proc.returncode != 0:
        logger.warning(
            "git command failed (rc=%s): %s\nstdout:\n%s\nstderr:\n%s",
            proc.returncode,
            " ".join(cmd),
            proc.stdout,
            proc.stderr,
        )
    return proc


@dataclass(frozen=True)
class DirectoryLease:
    path: Path
    _owner: "DirectoryLeases"

    @property
    def held(self) -> bool:
        return self._owner.is_held(self)


class DirectoryLeases:
    """Exclusive leases on working-copy directories.

    At most one lease per directory is outstanding at a time; acquiring a
    held directory blocks until it is released.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # path -> (lock, number of holders plus waiters); dropped at zero.
        self._locks: Dict[Path, List] = {}
        self._active: Dict[Path, DirectoryLease] = {}

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            slot = self._locks.setdefault(path, [threading.Lock(), 0])
            slot[1] += 1
            return slot[0]

    def _release(self, path: Path, lock: threading.Lock) -> None:
        with self._guard:
            self._active.pop(path, None)
            slot = self._locks[path]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[path]
        lock.release()

    def __len__(self) -> int:
        """Number of directories currently leased or waited on."""
        with self._guard:
            return len(self._locks)

    @contextmanager
    def acquire(self, path: Path) -> Iterator[DirectoryLease]:
        key = Path(path).absolute()
        lock = self._lock_for(key)
        lock.acquire()
        lease = DirectoryLease(key, self)
        with self._guard:
            self._active[key] = lease
        try:
            yield lease
        finally:
            self._release(key, lock)

    def is_held(self, lease: DirectoryLease) -> bool:
        with self._guard:
            return self._active.get(lease.path) is lease


@dataclass
class CheckedOutJob:
    """A job whose working copy is synchronized and ready to use."""

    command: List[str]
    dir: Path
    clone_root: Path
    repository: Repository
    issue: Optional[Issue]


def _hide_paths(text: str, path: Path) -> str:
    """Replace host paths to ``path`` in git output with its bare name."""
    candidates = {str(path), str(path.absolute()), str(path.resolve())}
    for candidate in sorted(candidates, key=len, reverse=True):
        text = text.replace(candidate, path.name)
    return text


def _clone(url: str, dest: Path, token: Optional[str]) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    _LOGGER.info("Cloning %s to %s", url, dest)
    proc = run_git(
        ["clone", url, str(dest)], cwd=dest.parent, config=auth_config(token)
    )
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"git exited with {proc.returncode}"
        raise CloneError(_hide_paths(detail, dest))


def _sync_to_ref(repo_dir: Path, refspec: str, token: Optional[str]) -> str:
    """Fetch ``refspec`` from origin and force the working tree to FETCH_HEAD."""
    steps = [
        (
            [
                "fetch",
                "--force",
                "--update-head-ok",
                "origin",
                refspec,
            ],
            auth_config(token),
        ),
        (["rev-parse", "FETCH_HEAD"], []),
    ]
    sha = ""
    for args, config in steps:
        proc = run_git(args, cwd=repo_dir, config=config)
        if proc.returncode != 0:
            detail = proc.stderr.strip() or proc.returncode
            raise CheckoutError(f"git {args[0]} failed: {_hide_paths(str(detail), repo_dir)}")
        sha = proc.stdout.strip()

    for args in (["reset", "--hard", sha], ["clean", "-ffdx"]):
        proc = run_git(args, cwd=repo_dir)
        if proc.returncode != 0:
            detail = proc.stderr.strip() or proc.returncode
            raise CheckoutError(f"git {args[0]} failed: {_hide_paths(str(detail), repo_dir)}")
    return sha


def ensure_clone(url: str, dest: Path, *, token: Optional[str] = None) -> bool:
    """Make sure ``dest`` holds a clone of ``url``.

    Returns True if a fresh clone was made. Raises NoDirectory when ``dest``
    exists as something other than a directory; nothing is deleted.
    """
    if not dest.exists() and not dest.is_symlink():
        _clone(url, dest, token)
        return True
    if not dest.is_dir():
        _LOGGER.warning("Path %s exists but is not a directory", dest)
        raise NoDirectory(dest)
    if not (dest / ".git").is_dir():
        raise CheckoutError(f"{dest.name} exists but is not a git repository")
    return False


def checkout(
    job: Job,
    root: Path | str,
    lease: DirectoryLease,
    *,
    token: Optional[str] = None,
) -> CheckedOutJob:
    """Synchronize the job's working copy with the head of its pull request."""
    root = Path(root)
    repo_dir = job.repo_dir(root)
    if lease.path != repo_dir.absolute() or not lease.held:
        raise LeaseError(f"No lease held for {job.dir_name()}")

    ensure_clone(job.repository.clone_url, repo_dir, token=token)

    branch = job.pr_branch()
    _LOGGER.info("Fetching %s in %s", branch, repo_dir)
    sha = _sync_to_ref(repo_dir, f"+refs/{branch}:refs/heads/{branch}", token)
    _LOGGER.info("Checked out %s at %s", branch, sha)

    return CheckedOutJob(
        command=list(job.command),
        dir=repo_dir,
        clone_root=root,
        repository=job.repository,
        issue=job.issue,
    )


def sync_default_branch(repo_dir: Path, *, token: Optional[str] = None) -> str:
    """Force an existing clone to the tip of origin's default branch."""
    return _sync_to_ref(repo_dir, "HEAD", token)


__all__ = [
    "CheckedOutJob",
    "DirectoryLease",
    "DirectoryLeases",
    "auth_config",
    "checkout",
    "ensure_clone",
    "run_git",
    "sync_default_branch",
]
