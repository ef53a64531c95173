"""Turn a checked-out job into a ready-to-run script with its capabilities."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ci_script.capabilities import cargo as cargo_caps
from ci_script.capabilities import git as git_caps
from ci_script.capabilities import issue as issue_caps
from ci_script.capabilities import modules as module_caps
from ci_script.capabilities.git import Git, GitIdentity, LocalRepo
from ci_script.capabilities.issue import IssueHandle
from ci_script.checkout import CheckedOutJob
from ci_script.errors import NoCmd, NoScriptFound
from ci_script.sandbox.engine import Engine, Scope

_LOGGER = logging.getLogger(__name__)


def clones_dir(checked: CheckedOutJob) -> Path:
    return checked.clone_root / f"{checked.dir.name}.clones"


def prepare_engine(
    checked: CheckedOutJob,
    *,
    cargo_bin: str = "cargo",
    max_operations: Optional[int] = None,
) -> Engine:
    engine = Engine(max_operations=max_operations)
    cargo_caps.register(engine, checked.dir, cargo_bin)
    issue_caps.register(engine)
    git_caps.register(engine)
    module_caps.register(engine, checked.dir, checked.command[1:])
    return engine


def resolve_script(command: Sequence[str], scripts_root: Path | str) -> Path:
    """Locate the job script named by the first command token.

    Neither error carries the host path, since the message is posted back to
    the issue.
    """
    if not command:
        raise NoCmd()
    name = command[0]
    root = Path(scripts_root).resolve()
    if not name or Path(name).is_absolute():
        raise NoScriptFound()
    candidate = (root / name).resolve()
    if not candidate.is_relative_to(root) or not candidate.is_file():
        _LOGGER.info("Script %r not found under the scripts root", name)
        raise NoScriptFound()
    return candidate


@dataclass
class RunnableJob:
    dir: Path
    script_path: Path
    engine: Engine
    scope: Scope
    _consumed: bool = field(default=False, repr=False)

    def run(self) -> Any:
        if self._consumed:
            raise RuntimeError("RunnableJob.run() may only be called once")
        self._consumed = True
        _LOGGER.info("Executing %s in %s", self.script_path.name, self.dir)
        script = self.engine.compile_file(self.script_path)
        return self.engine.run(script, self.scope)


def prepare_script(
    checked: CheckedOutJob,
    github: Any,
    *,
    scripts_root: Path | str = ".",
    cargo_bin: str = "cargo",
    token: Optional[str] = None,
    identity: Optional[GitIdentity] = None,
    clone_schemes: Sequence[str] = ("https",),
    max_operations: Optional[int] = None,
) -> RunnableJob:
    _LOGGER.debug("Preparing script for %s", checked.dir.name)
    script_path = resolve_script(checked.command, scripts_root)
    engine = prepare_engine(checked, cargo_bin=cargo_bin, max_operations=max_operations)

    scope = Scope()
    if checked.issue is not None:
        scope.push_constant(
            "ISSUE", IssueHandle(github, checked.repository, checked.issue.number)
        )
    scope.push_constant(
        "REPO",
        LocalRepo(
            checked.dir,
            repository=checked.repository,
            github=github,
            token=token,
            identity=identity,
        ),
    )
    scope.push_constant(
        "Git",
        Git(
            clones_dir(checked),
            github=github,
            token=token,
            identity=identity,
            allowed_schemes=clone_schemes,
        ),
    )
    args: List[str] = list(checked.command[1:])
    scope.push_constant("ARGS", args)

    return RunnableJob(
        dir=checked.dir, script_path=script_path, engine=engine, scope=scope
    )


__all__ = ["RunnableJob", "clones_dir", "prepare_engine", "prepare_script", "resolve_script"]
