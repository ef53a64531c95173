"""Static modules: ``env::`` and ``cargo_toml::``."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from ci_script.errors import CapabilityError
from ci_script.sandbox.engine import Engine, StaticModule

_LOGGER = logging.getLogger(__name__)

# Variables with this prefix configure the service and stay hidden from scripts.
SERVICE_ENV_PREFIX = "CIS_"


def command_env(args: Sequence[str]) -> Dict[str, str]:
    """Collect ``KEY=VALUE`` tokens from the job command."""
    overlay: Dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if sep and key:
            overlay[key] = value
    return overlay


def env_module(args: Sequence[str] = (), environ: Optional[Mapping[str, str]] = None) -> StaticModule:
    source = os.environ if environ is None else environ
    values = {
        key: value for key, value in source.items() if not key.startswith(SERVICE_ENV_PREFIX)
    }
    values.update(command_env(args))

    def get(name: str, default: Any = None) -> Any:
        return values.get(name, default)

    module = StaticModule("env", values)
    module.set("get", get)
    return module


def lookup(table: Mapping[str, Any], dotted: str, default: Any = None) -> Any:
    node: Any = table
    for part in dotted.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def load_manifest(repo_dir: Path) -> Dict[str, Any]:
    path = repo_dir / "Cargo.toml"
    if not path.is_file():
        return {}
    # Same confinement as LocalRepo: a symlinked manifest must stay in the tree.
    if not path.resolve().is_relative_to(repo_dir.resolve()):
        _LOGGER.warning("Cargo.toml in %s points outside the repository", repo_dir.name)
        raise CapabilityError("Path escapes the repository: Cargo.toml")
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        _LOGGER.warning("Ignoring unreadable Cargo.toml in %s: %s", repo_dir.name, exc)
        return {}


def cargo_toml_module(repo_dir: Path) -> StaticModule:
    manifest = load_manifest(repo_dir)

    def get(dotted: str, default: Any = None) -> Any:
        return lookup(manifest, dotted, default)

    return StaticModule(
        "cargo_toml",
        {"manifest": manifest, "get": get, "parse": tomllib.loads},
    )


def register(engine: Engine, repo_dir: Path, args: Sequence[str] = ()) -> None:
    engine.register_static_module("env", env_module(args))
    engine.register_static_module("cargo_toml", cargo_toml_module(repo_dir))


__all__ = [
    "SERVICE_ENV_PREFIX",
    "cargo_toml_module",
    "command_env",
    "env_module",
    "load_manifest",
    "lookup",
    "register",
]
