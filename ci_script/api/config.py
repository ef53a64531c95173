"""Configuration for the ci-script reactor and workers."""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/ci-script/config.yaml")
DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_BIND_PORT = 3000

DEFAULT_CONFIG: dict[str, Any] = {
    "webhook_secret": "",
    "github": {
        "api_url": "https://api.github.com",
        "app_id": None,
        "app_key_path": None,
        "token": None,
    },
    "bind_host": DEFAULT_BIND_HOST,
    "bind_port": DEFAULT_BIND_PORT,
    "log_level": "info",
    "command_prefix": "/benchbot",
    "repos_root": "./repos",
    "scripts_root": ".",
    "queue_url": None,
    "cargo_bin": "cargo",
    "git": {
        "author_name": "ci-script",
        "author_email": "ci-script@localhost",
    },
}


@dataclass(frozen=True)
class Settings:
    webhook_secret: str
    github_api_url: str
    app_id: Optional[int]
    app_key: Optional[str]
    github_token: Optional[str]
    bind_host: str
    bind_port: int
    log_level: str
    command_prefix: str
    repos_root: Path
    scripts_root: Path
    queue_url: Optional[str]
    cargo_bin: str
    git_author_name: str
    git_author_email: str

    @classmethod
    def load(cls) -> Settings:
        config_path = Path(os.environ.get("CIS_CONFIG_PATH", DEFAULT_CONFIG_PATH))
        cfg: dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        if config_path.is_file():
            try:
                user_cfg = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
                if not isinstance(user_cfg, dict):
                    raise ValueError(
                        "configuration file must contain a mapping at the top level"
                    )
                for key, value in user_cfg.items():
                    if isinstance(value, dict) and isinstance(cfg.get(key), dict):
                        cfg[key].update(value)
                    else:
                        cfg[key] = value
            except (OSError, ValueError, yaml.YAMLError) as exc:
                _LOGGER.warning("Failed to load config at %s: %s", config_path, exc)
        else:
            _LOGGER.debug(
                "Config file %s missing; falling back to defaults", config_path
            )

        github = cfg.get("github") or {}
        git = cfg.get("git") or {}

        app_id = _parse_int_env("CIS_APP_ID", _as_int(github.get("app_id")))
        app_key = os.environ.get("CIS_APP_KEY")
        key_path = os.environ.get("CIS_APP_KEY_PATH", github.get("app_key_path"))
        if app_key is None and key_path:
            try:
                app_key = Path(key_path).expanduser().read_text(encoding="utf-8")
            except OSError as exc:
                _LOGGER.warning("Failed to read app key at %s: %s", key_path, exc)

        return cls(
            webhook_secret=os.environ.get(
                "CIS_WEBHOOK_SECRET", str(cfg.get("webhook_secret") or "")
            ),
            github_api_url=os.environ.get(
                "CIS_GITHUB_API_URL", str(github.get("api_url") or "https://api.github.com")
            ),
            app_id=app_id,
            app_key=app_key,
            github_token=os.environ.get("CIS_GITHUB_TOKEN", github.get("token")),
            bind_host=os.environ.get("CIS_BIND_HOST", str(cfg.get("bind_host"))),
            bind_port=_parse_int_env(
                "CIS_BIND_PORT", _as_int(cfg.get("bind_port")) or DEFAULT_BIND_PORT
            ),
            log_level=os.environ.get("CIS_LOG_LEVEL", str(cfg.get("log_level"))).lower(),
            command_prefix=os.environ.get(
                "CIS_COMMAND_PREFIX", str(cfg.get("command_prefix"))
            ),
            repos_root=Path(
                os.environ.get("CIS_REPOS_ROOT", str(cfg.get("repos_root")))
            ).expanduser(),
            scripts_root=Path(
                os.environ.get("CIS_SCRIPTS_ROOT", str(cfg.get("scripts_root")))
            ).expanduser(),
            queue_url=os.environ.get("CIS_QUEUE_URL", cfg.get("queue_url")),
            cargo_bin=os.environ.get("CIS_CARGO_BIN", str(cfg.get("cargo_bin"))),
            git_author_name=str(git.get("author_name") or "ci-script"),
            git_author_email=str(git.get("author_email") or "ci-script@localhost"),
        )


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        _LOGGER.warning("Invalid integer in config: %r", value)
        return None


def _parse_int_env(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        _LOGGER.warning("Invalid integer for %s: %r; using %s", name, value, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.load()


__all__ = ["DEFAULT_CONFIG", "Settings", "get_settings"]
