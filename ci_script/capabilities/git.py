"""Git capabilities: the job's working copy (``REPO``) and extra clones (``Git``).

Every path a script passes in is repository-relative. Paths are resolved
once, at the boundary, and anything that would land outside the working
tree or inside ``.git`` is refused.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

from ci_script.checkout import auth_config, ensure_clone, run_git, sync_default_branch
from ci_script.errors import CapabilityError
from ci_script.models import Repository, User
from ci_script.sandbox.engine import Engine

_LOGGER = logging.getLogger(__name__)

_CLONE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class DirEntryPath:
    """A repository-relative path as seen by scripts."""

    def __init__(self, path: str | PurePosixPath) -> None:
        self._path = PurePosixPath(path)

    @classmethod
    def coerce(cls, value: Any) -> DirEntryPath:
        if isinstance(value, DirEntryPath):
            return value
        if isinstance(value, str):
            return cls(value)
        raise CapabilityError(f"Expected a path, got {type(value).__name__}")

    @property
    def posix(self) -> PurePosixPath:
        return self._path

    def file_name(self) -> str:
        return self._path.name

    def to_string(self) -> str:
        return str(self._path)

    def strip_prefix(self, prefix: Any) -> DirEntryPath:
        base = DirEntryPath.coerce(prefix).posix
        try:
            return DirEntryPath(self._path.relative_to(base))
        except ValueError:
            raise CapabilityError(f"{self} does not start with {base}") from None

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DirEntryPath):
            return self._path == other._path
        if isinstance(other, str):
            return self._path == PurePosixPath(other)
        return NotImplemented

    def __lt__(self, other: DirEntryPath) -> bool:
        return str(self) < str(other)

    def __hash__(self) -> int:
        return hash(self._path)

    def __str__(self) -> str:
        return str(self._path)

    def __repr__(self) -> str:
        return f"DirEntryPath({str(self._path)!r})"


@dataclass(frozen=True)
class DirEntry:
    path: DirEntryPath
    kind: str

    def is_file(self) -> bool:
        return self.kind == "file"

    def is_dir(self) -> bool:
        return self.kind == "dir"

    def is_symlink(self) -> bool:
        return self.kind == "symlink"


@dataclass(frozen=True)
class Status:
    changed_paths: Tuple[DirEntryPath, ...] = ()
    added_paths: Tuple[DirEntryPath, ...] = ()
    deleted_paths: Tuple[DirEntryPath, ...] = ()

    def changed(self) -> List[DirEntryPath]:
        return list(self.changed_paths)

    def added(self) -> List[DirEntryPath]:
        return list(self.added_paths)

    def deleted(self) -> List[DirEntryPath]:
        return list(self.deleted_paths)


def parse_status(output: str) -> Status:
    """Parse ``git status --porcelain=v1 -z`` output."""
    changed: set = set()
    added: set = set()
    deleted: set = set()
    records = output.split("\0")
    i = 0
    while i < len(records):
        record = records[i]
        i += 1
        if len(record) < 4:
            continue
        code, path = record[:2], DirEntryPath(record[3:])
        if code[0] in "RC":
            # Renames and copies are followed by their source path.
            i += 1
            added.add(path)
        elif code == "??" or "A" in code:
            added.add(path)
        elif "D" in code:
            deleted.add(path)
        elif "M" in code or "T" in code or "U" in code:
            changed.add(path)
    return Status(
        changed_paths=tuple(sorted(changed)),
        added_paths=tuple(sorted(added)),
        deleted_paths=tuple(sorted(deleted)),
    )


def redact_url(url: str) -> str:
    """Drop credentials from a remote URL."""
    parts = urlsplit(url)
    if not parts.netloc or "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def repository_from_url(url: str) -> Repository:
    """Best-effort owner/name for a GitHub remote URL."""
    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split("/") if segment]
    if len(segments) < 2:
        raise CapabilityError("Remote URL does not name an owner and repository")
    owner, name = segments[-2], segments[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return Repository(
        id=0,
        name=name,
        url=redact_url(url),
        owner=User(login=owner),
        clone_url=redact_url(url),
    )


@dataclass
class GitIdentity:
    name: str = "ci-script"
    email: str = "ci-script@localhost"

    def config(self) -> List[str]:
        return ["-c", f"user.name={self.name}", "-c", f"user.email={self.email}"]


class LocalRepo:
    """A git working tree a script may read, modify, commit and push."""

    def __init__(
        self,
        root: Path,
        *,
        repository: Optional[Repository] = None,
        github: Any = None,
        token: Optional[str] = None,
        identity: Optional[GitIdentity] = None,
    ) -> None:
        self.root = Path(root)
        self.repository = repository
        self._github = github
        self._token = token
        self._identity = identity or GitIdentity()

    # -- helpers --------------------------------------------------------------

    def _git(self, args: Sequence[str], *, config: Sequence[str] = ()) -> str:
        proc = run_git(args, cwd=self.root, logger=_LOGGER, config=config)
        if proc.returncode != 0:
            raise CapabilityError(
                f"git {args[0]} failed: {proc.stderr.strip() or proc.returncode}"
            )
        return proc.stdout

    def _relative(self, value: Any) -> PurePosixPath:
        rel = DirEntryPath.coerce(value).posix
        if rel.is_absolute():
            raise CapabilityError(f"Path must be relative to the repository: {rel}")
        if rel.parts and rel.parts[0] == ".git":
            raise CapabilityError(f"Path is inside .git: {rel}")
        return rel

    def _resolve(self, value: Any) -> Path:
        rel = self._relative(value)
        root = self.root.resolve()
        full = (root / rel).resolve()
        if not full.is_relative_to(root):
            raise CapabilityError(f"Path escapes the repository: {rel}")
        inside = full.relative_to(root)
        if inside.parts and inside.parts[0] == ".git":
            raise CapabilityError(f"Path is inside .git: {rel}")
        return full

    def _entry_path(self, full: Path) -> DirEntryPath:
        return DirEntryPath(full.relative_to(self.root.resolve()).as_posix())

    # -- files ----------------------------------------------------------------

    def read(self, path: Any) -> str:
        full = self._resolve(path)
        try:
            return full.read_text(encoding="utf-8")
        except OSError as exc:
            raise CapabilityError(f"Failed to read {self._relative(path)}: {exc.strerror}") from None

    def write(self, path: Any, content: Any) -> None:
        full = self._resolve(path)
        if full == self.root.resolve():
            raise CapabilityError("Cannot write to the repository root")
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(str(content), encoding="utf-8")
        except OSError as exc:
            raise CapabilityError(f"Failed to write {self._relative(path)}: {exc.strerror}") from None

    def ls(self, directory: Any = None) -> List[DirEntry]:
        """All entries below ``directory`` (default: the root), ``.git`` excluded."""
        base = self._resolve(directory) if directory is not None else self.root.resolve()
        if not base.is_dir():
            raise CapabilityError(f"Not a directory: {self._relative(directory)}")
        root = self.root.resolve()
        entries: List[DirEntry] = []
        for current, dirnames, filenames in os.walk(base):
            here = Path(current)
            if here == root:
                dirnames[:] = [name for name in dirnames if name != ".git"]
            dirnames.sort()
            for name in list(dirnames):
                child = here / name
                kind = "symlink" if child.is_symlink() else "dir"
                entries.append(DirEntry(self._entry_path(child), kind))
            for name in sorted(filenames):
                child = here / name
                kind = "symlink" if child.is_symlink() else "file"
                entries.append(DirEntry(self._entry_path(child), kind))
        entries.sort(key=lambda entry: str(entry.path))
        return entries

    def ls_files(self, directory: Any = None) -> List[DirEntryPath]:
        args = ["ls-files", "-z"]
        if directory is not None:
            self._resolve(directory)
            args += ["--", str(self._relative(directory))]
        return [DirEntryPath(name) for name in self._git(args).split("\0") if name]

    def ls_modified(self) -> List[DirEntryPath]:
        output = self._git(["ls-files", "-m", "-z"])
        return sorted({DirEntryPath(name) for name in output.split("\0") if name})

    # -- git operations -------------------------------------------------------

    def add(self, path: Any) -> None:
        self._resolve(path)
        self._git(["add", "--", str(self._relative(path))])

    def status(self) -> Status:
        return parse_status(self._git(["status", "--porcelain=v1", "-z"]))

    def commit(self, message: Any) -> str:
        self._git(["commit", "-m", str(message)], config=self._identity.config())
        return self._git(["rev-parse", "HEAD"]).strip()

    def branch(self, name: Any) -> None:
        name = str(name)
        if name.startswith("-"):
            raise CapabilityError(f"Invalid branch name: {name}")
        self._git(["check-ref-format", "--branch", name])
        self._git(["checkout", "-B", name])

    def current_branch(self) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def push(self, remote: Any, branch: Any) -> None:
        remote, branch = str(remote), str(branch)
        remotes = self._git(["remote"]).split()
        if remote not in remotes:
            raise CapabilityError(f"Unknown remote: {remote}")
        if branch.startswith("-"):
            raise CapabilityError(f"Invalid branch name: {branch}")
        _LOGGER.info("Pushing %s to %s", branch, remote)
        self._git(["push", remote, f"{branch}:{branch}"], config=auth_config(self._token))

    def url(self) -> str:
        return redact_url(self._git(["remote", "get-url", "origin"]).strip())

    def create_pr(self, title: Any = "", body: Any = "", base: Any = None) -> str:
        if self._github is None:
            raise CapabilityError("No GitHub client available to open a pull request")
        repository = self.repository or repository_from_url(self.url())
        head = self.current_branch()
        target = str(base) if base is not None else self._github.default_branch(repository)
        payload = self._github.create_pull_request(
            repository,
            title=str(title) or head,
            head=head,
            base=target,
            body=str(body),
        )
        return str(payload.get("html_url", ""))


class Git:
    """Clones additional repositories next to the job's working copy."""

    def __init__(
        self,
        clones_root: Path,
        *,
        github: Any = None,
        token: Optional[str] = None,
        identity: Optional[GitIdentity] = None,
        allowed_schemes: Sequence[str] = ("https",),
    ) -> None:
        self.clones_root = Path(clones_root)
        self._github = github
        self._token = token
        self._identity = identity
        self.allowed_schemes = tuple(allowed_schemes)

    def _clone_name(self, url: str) -> str:
        parts = urlsplit(url)
        if parts.scheme not in self.allowed_schemes:
            raise CapabilityError(f"Clone URL scheme not allowed: {parts.scheme or 'none'}")
        name = PurePosixPath(parts.path).name
        if name.endswith(".git"):
            name = name[: -len(".git")]
        if not _CLONE_NAME.match(name):
            raise CapabilityError("Clone URL does not end in a repository name")
        return name

    def clone(self, url: Any) -> LocalRepo:
        url = str(url)
        name = self._clone_name(url)
        dest = self.clones_root / name
        fresh = ensure_clone(url, dest, token=self._token)
        if not fresh:
            origin = run_git(["remote", "get-url", "origin"], cwd=dest, logger=_LOGGER)
            if redact_url(origin.stdout.strip()) != redact_url(url):
                raise CapabilityError(f"Clone directory {name} belongs to another remote")
            sync_default_branch(dest, token=self._token)
        return LocalRepo(dest, github=self._github, token=self._token, identity=self._identity)


def register(engine: Engine) -> None:
    engine.register_type(Git, "Git")
    engine.register_fn(Git, "clone", Git.clone)

    engine.register_type(LocalRepo, "LocalRepo")
    for name in (
        "read",
        "write",
        "ls",
        "ls_files",
        "ls_modified",
        "add",
        "status",
        "commit",
        "branch",
        "current_branch",
        "push",
        "create_pr",
        "url",
    ):
        engine.register_fn(LocalRepo, name, getattr(LocalRepo, name))

    engine.register_type(DirEntry, "DirEntry")
    engine.register_get(DirEntry, "path", lambda entry: entry.path)
    engine.register_fn(DirEntry, "is_file", DirEntry.is_file)
    engine.register_fn(DirEntry, "is_dir", DirEntry.is_dir)
    engine.register_fn(DirEntry, "is_symlink", DirEntry.is_symlink)

    engine.register_type(Status, "Status")
    engine.register_fn(Status, "changed", Status.changed)
    engine.register_fn(Status, "added", Status.added)
    engine.register_fn(Status, "deleted", Status.deleted)

    engine.register_type(DirEntryPath, "DirEntryPath")
    engine.register_fn(DirEntryPath, "file_name", DirEntryPath.file_name)
    engine.register_fn(DirEntryPath, "to_string", DirEntryPath.to_string)
    engine.register_fn(DirEntryPath, "strip_prefix", DirEntryPath.strip_prefix)


__all__ = [
    "DirEntry",
    "DirEntryPath",
    "Git",
    "GitIdentity",
    "LocalRepo",
    "Status",
    "parse_status",
    "redact_url",
    "register",
    "repository_from_url",
]
