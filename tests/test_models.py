from __future__ import annotations

from pathlib import Path

import pytest

from ci_script.errors import MissingRepositoryField
from ci_script.models import Job, Repository, parse_command

from conftest import make_job


def _repo_payload(**overrides):
    payload = {
        "id": 7,
        "name": "demo",
        "url": "https://api.github.com/repos/octo/demo",
        "owner": {"login": "octo", "id": 1, "type": "User"},
        "clone_url": "https://github.com/octo/demo.git",
        "private": False,
    }
    payload.update(overrides)
    return payload


def test_parse_command_reads_first_line_only():
    body = "/benchbot bench.cis --quick\nplease and thank you\n/benchbot other"
    assert parse_command(body, "/benchbot") == ["bench.cis", "--quick"]


def test_parse_command_requires_whole_prefix_token():
    assert parse_command("/benchbotx run.cis", "/benchbot") is None
    assert parse_command("hello /benchbot run.cis", "/benchbot") is None
    assert parse_command("", "/benchbot") is None
    assert parse_command(None, "/benchbot") is None


def test_parse_command_bare_prefix_is_an_empty_command():
    assert parse_command("/benchbot", "/benchbot") == []
    assert parse_command("/benchbot   \nmore", "/benchbot") == []


def test_parse_command_splits_shell_style():
    assert parse_command('/benchbot run.cis "two words" X=1', "/benchbot") == [
        "run.cis",
        "two words",
        "X=1",
    ]
    # An unbalanced quote falls back to whitespace splitting.
    assert parse_command('/benchbot run.cis "oops', "/benchbot") == ["run.cis", '"oops']


def test_repository_requires_clone_url():
    payload = _repo_payload()
    del payload["clone_url"]
    with pytest.raises(MissingRepositoryField) as excinfo:
        Repository.from_github(payload)
    assert str(excinfo.value) == 'Failed to parse Repository: missing field "clone_url"'


def test_repository_requires_owner():
    with pytest.raises(MissingRepositoryField) as excinfo:
        Repository.from_github(_repo_payload(owner=None))
    assert excinfo.value.field == "owner"


def test_repository_from_github_keeps_needed_fields():
    repo = Repository.from_github(_repo_payload())
    assert repo.full_name == "octo/demo"
    assert repo.clone_url == "https://github.com/octo/demo.git"
    assert repo.owner.login == "octo"


def test_job_naming():
    job = make_job(number=12, issue_author="alice")
    assert job.pr_branch() == "pull/12/head"
    assert job.dir_name() == "42_12_alice_octo_demo"
    assert job.repo_dir(Path("/srv/repos")) == Path("/srv/repos/42_12_alice_octo_demo")


def test_job_round_trips_through_json():
    job = make_job(command=["bench.cis", "fast"])
    restored = Job.model_validate(job.model_dump(mode="json"))
    assert restored == job
    assert restored.user is not None and restored.user.login == "bob"


def test_queue_keys_are_unique():
    job = make_job()
    assert job.queue_key() != job.queue_key()
    assert job.queue_key().startswith("demo_bench.cis_")
