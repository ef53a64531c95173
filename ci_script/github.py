"""Minimal GitHub REST client used by the dispatcher and script capabilities."""

from __future__ import annotations

import calendar
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import jwt

from ci_script.errors import GitHubError
from ci_script.models import Repository

_LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
_ACCEPT = "application/vnd.github+json"
# Refresh installation tokens this many seconds before GitHub expires them.
_TOKEN_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: float

    def usable(self, now: float) -> bool:
        return now + _TOKEN_MARGIN_SECONDS < self.expires_at


class AppAuth:
    """GitHub App credentials: signs JWTs and mints installation tokens."""

    def __init__(self, app_id: int, private_key: str) -> None:
        self.app_id = app_id
        self._private_key = private_key

    def create_jwt(self, now: Optional[float] = None) -> str:
        issued = int(now if now is not None else time.time())
        payload = {
            # Backdated to absorb clock drift against GitHub.
            "iat": issued - 60,
            "exp": issued + 9 * 60,
            "iss": str(self.app_id),
        }
        return jwt.encode(payload, self._private_key, algorithm="RS256")


def _parse_expiry(value: Any) -> float:
    if isinstance(value, str):
        try:
            return float(calendar.timegm(time.strptime(value, "%Y-%m-%dT%H:%M:%SZ")))
        except ValueError:
            pass
    return time.time() + 30 * 60


class GitHubClient:
    """Synchronous client over a shared ``httpx.Client``.

    Use :meth:`for_repository` to obtain a client authenticated for one
    repository. With App credentials that is an installation token scoped to
    the repository; otherwise the static token (if any) is reused.
    """

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        app: Optional[AppAuth] = None,
        base_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        http: Optional[httpx.Client] = None,
    ) -> None:
        trimmed = base_url.rstrip("/")
        if not trimmed:
            raise ValueError("GitHub API base URL must not be empty")
        self.base_url = trimmed
        self.token = token
        self.app = app
        if http is None:
            kwargs: Dict[str, Any] = {
                "base_url": trimmed,
                "timeout": httpx.Timeout(timeout_seconds),
                "headers": {"Accept": _ACCEPT, "User-Agent": "ci-script"},
            }
            if transport is not None:
                kwargs["transport"] = transport
            http = httpx.Client(**kwargs)
        self._http = http
        self._lock = threading.Lock()
        self._installation_tokens: Dict[str, InstallationToken] = {}

    def close(self) -> None:
        self._http.close()

    # -- plumbing -------------------------------------------------------------

    def _headers(self, bearer: Optional[str]) -> Dict[str, str]:
        if not bearer:
            return {}
        return {"Authorization": f"Bearer {bearer}"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: Optional[str] = None,
        json: Any = None,
    ) -> Any:
        try:
            response = self._http.request(
                method, path, json=json, headers=self._headers(bearer)
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GitHubError(
                f"{method} {path} failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise GitHubError(f"{method} {path} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GitHubError(f"{method} {path} returned invalid JSON") from exc

    def _installation_token(self, repository: Repository) -> InstallationToken:
        if self.app is None:
            raise GitHubError("No GitHub App credentials configured")
        full_name = repository.full_name
        with self._lock:
            cached = self._installation_tokens.get(full_name)
            if cached is not None and cached.usable(time.time()):
                return cached
            app_jwt = self.app.create_jwt()
            installation = self._request(
                "GET", f"/repos/{full_name}/installation", bearer=app_jwt
            )
            if not isinstance(installation, dict) or "id" not in installation:
                raise GitHubError(f"No app installation found for {full_name}")
            _LOGGER.info(
                "Creating installation token for %s (installation %s)",
                full_name,
                installation["id"],
            )
            payload = self._request(
                "POST",
                f"/app/installations/{installation['id']}/access_tokens",
                bearer=app_jwt,
                json={"repository_ids": [repository.id]},
            )
            if not isinstance(payload, dict) or not payload.get("token"):
                raise GitHubError("Installation token response had no token")
            token = InstallationToken(
                token=payload["token"], expires_at=_parse_expiry(payload.get("expires_at"))
            )
            self._installation_tokens[full_name] = token
            return token

    # -- public API -----------------------------------------------------------

    def for_repository(self, repository: Repository) -> GitHubClient:
        """Return a client whose token is valid for ``repository``."""
        if self.app is None:
            return self
        token = self._installation_token(repository)
        return GitHubClient(token=token.token, base_url=self.base_url, http=self._http)

    def create_comment(self, repository: Repository, issue_number: int, body: str) -> Dict[str, Any]:
        _LOGGER.info("Commenting on %s#%s", repository.full_name, issue_number)
        return self._request(
            "POST",
            f"/repos/{repository.full_name}/issues/{issue_number}/comments",
            bearer=self.token,
            json={"body": body},
        )

    def get_repository(self, repository: Repository) -> Dict[str, Any]:
        payload = self._request(
            "GET", f"/repos/{repository.full_name}", bearer=self.token
        )
        if not isinstance(payload, dict):
            raise GitHubError(f"Unexpected repository payload for {repository.full_name}")
        return payload

    def default_branch(self, repository: Repository) -> str:
        return str(self.get_repository(repository).get("default_branch") or "main")

    def create_pull_request(
        self,
        repository: Repository,
        *,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> Dict[str, Any]:
        _LOGGER.info(
            "Opening pull request %s -> %s on %s", head, base, repository.full_name
        )
        payload = self._request(
            "POST",
            f"/repos/{repository.full_name}/pulls",
            bearer=self.token,
            json={"title": title, "head": head, "base": base, "body": body},
        )
        if not isinstance(payload, dict):
            raise GitHubError("Unexpected pull request payload")
        return payload


__all__ = ["AppAuth", "GitHubClient", "InstallationToken", "DEFAULT_API_URL"]
