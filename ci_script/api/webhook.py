"""GitHub webhook handling: signature checks and comment -> Job conversion."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from ci_script.models import Issue, Job, Repository, User, parse_command

_LOGGER = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
COMMENT_EVENT = "issue_comment"


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """Check ``header`` against the HMAC-SHA256 of ``body``.

    Without a configured secret nothing verifies.
    """
    if not secret or not header:
        return False
    return hmac.compare_digest(sign(secret, body), header.strip())


def job_from_comment(payload: Dict[str, Any], prefix: str) -> Optional[Job]:
    """Build a Job from an ``issue_comment`` payload.

    Returns None when the event does not carry a bot command. Raises on
    malformed payloads; the caller logs and drops them.
    """
    if payload.get("action") != "created":
        return None
    comment = payload.get("comment") or {}
    command = parse_command(comment.get("body"), prefix)
    if command is None:
        return None
    repository = Repository.from_github(payload.get("repository") or {})
    issue = Issue.model_validate(payload["issue"])
    author = comment.get("user")
    user = User.model_validate(author) if author else None
    _LOGGER.info(
        "Command %r on %s#%s", " ".join(command), repository.full_name, issue.number
    )
    return Job(command=command, repository=repository, issue=issue, user=user)


__all__ = [
    "COMMENT_EVENT",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "job_from_comment",
    "sign",
    "verify_signature",
]
