"""The ``cargo <args>`` statement available to scripts."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List

from ci_script.errors import CargoCmdParse
from ci_script.sandbox.engine import Engine

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CargoResult:
    success: bool
    stdout: str
    stderr: str

    def is_ok(self) -> bool:
        return self.success


def _split(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    try:
        return shlex.split(str(value))
    except ValueError:
        raise CargoCmdParse() from None


def run_cargo(value: Any, *, cwd: Path, cargo_bin: str = "cargo") -> CargoResult:
    """Run cargo with shell-split ``value`` as its arguments.

    A failing or missing cargo yields a failed result instead of an error, so
    scripts can decide what to do about it.
    """
    args = _split(value)
    cmd = [cargo_bin, *args]
    _LOGGER.info("Running %s (cwd=%s)", " ".join(cmd), cwd)
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        _LOGGER.warning("Failed to start %s: %s", cargo_bin, exc)
        return CargoResult(success=False, stdout="", stderr=str(exc))
    if proc.returncode != 0:
        _LOGGER.warning("cargo exited with %s", proc.returncode)
    return CargoResult(success=proc.returncode == 0, stdout=proc.stdout, stderr=proc.stderr)


def make_cargo(cwd: Path, cargo_bin: str = "cargo") -> Callable[[Any], CargoResult]:
    def cargo(value: Any) -> CargoResult:
        return run_cargo(value, cwd=cwd, cargo_bin=cargo_bin)

    return cargo


def register(engine: Engine, cwd: Path, cargo_bin: str = "cargo") -> None:
    engine.register_type(CargoResult, "CargoResult")
    engine.register_fn(CargoResult, "is_ok", CargoResult.is_ok)
    engine.register_get(CargoResult, "stdout", lambda result: result.stdout)
    engine.register_get(CargoResult, "stderr", lambda result: result.stderr)
    engine.register_custom_syntax("cargo", make_cargo(cwd, cargo_bin))


__all__ = ["CargoResult", "make_cargo", "register", "run_cargo"]
