#!/usr/bin/env python3
"""Run a job script against a local working copy, without GitHub or a queue.

There is no ISSUE in scope; REPO, Git and ARGS behave as they do for jobs.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from ci_script.api.config import get_settings
from ci_script.capabilities.git import GitIdentity, repository_from_url
from ci_script.checkout import CheckedOutJob, run_git
from ci_script.dispatch import build_github_client
from ci_script.errors import CapabilityError, CisError
from ci_script.models import Repository, User
from ci_script.runner import prepare_script

_LOGGER = logging.getLogger("ci_script.run")


def _local_repository(repo_dir: Path) -> Repository:
    proc = run_git(["remote", "get-url", "origin"], cwd=repo_dir, logger=_LOGGER)
    if proc.returncode == 0:
        try:
            return repository_from_url(proc.stdout.strip())
        except CapabilityError:
            pass
    return Repository(
        id=0,
        name=repo_dir.name,
        url=repo_dir.as_uri(),
        owner=User(login="local"),
        clone_url=repo_dir.as_uri(),
    )


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--repo-dir", default=".", help="Working copy to run against")
    parser.add_argument("--scripts-root", help="Directory job scripts resolve under")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Script path and arguments")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_dir = Path(args.repo_dir).resolve()
    checked = CheckedOutJob(
        command=list(args.command),
        dir=repo_dir,
        clone_root=repo_dir.parent,
        repository=_local_repository(repo_dir),
        issue=None,
    )
    github = build_github_client(settings)
    try:
        runnable = prepare_script(
            checked,
            github,
            scripts_root=args.scripts_root or settings.scripts_root,
            cargo_bin=settings.cargo_bin,
            token=settings.github_token,
            identity=GitIdentity(settings.git_author_name, settings.git_author_email),
        )
        runnable.run()
    except CisError as exc:
        _LOGGER.error("%s", exc)
        return 1
    finally:
        github.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
