"""Error taxonomy for ci-script jobs."""

from __future__ import annotations

from pathlib import Path


class CisError(Exception):
    """Base class for every error a job can surface."""


class CloneError(CisError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to clone repository: {detail}")


class CheckoutError(CisError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to checkout repository: {detail}")


class NoScriptFound(CisError):
    def __init__(self) -> None:
        super().__init__("No job script found")


class NoCmd(CisError):
    def __init__(self) -> None:
        super().__init__("Missing bot command")


class NoDirectory(CisError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            "Failed to checkout repository because path "
            f"{path.name} exists but is not a directory"
        )


class ScriptParseError(CisError):
    """Raised when a script fails to compile.

    The message only carries the position inside the script; the host path
    the script was loaded from is never part of it.
    """

    def __init__(self, detail: str, line: int | None = None) -> None:
        self.detail = detail
        self.line = line
        where = f" (line {line})" if line else ""
        super().__init__(f"Failed to parse script: {detail}{where}")


class ScriptExecutionError(CisError):
    def __init__(self, detail: str, line: int | None = None) -> None:
        self.detail = detail
        self.line = line
        where = f" (line {line})" if line else ""
        super().__init__(f"Failed to execute script: {detail}{where}")


class CargoCmdParse(CisError):
    def __init__(self) -> None:
        super().__init__("Failed to parse cargo command")


class MissingRepositoryField(CisError):
    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f'Failed to parse Repository: missing field "{field}"')


class LeaseError(CisError):
    """Raised when a checkout is attempted without holding its directory lease."""


class CapabilityError(CisError):
    """Raised by a capability handle when a script asks for something it may not do."""


class GitHubError(CisError):
    """Raised when a GitHub API call fails."""


__all__ = [
    "CisError",
    "CloneError",
    "CheckoutError",
    "NoScriptFound",
    "NoCmd",
    "NoDirectory",
    "ScriptParseError",
    "ScriptExecutionError",
    "CargoCmdParse",
    "MissingRepositoryField",
    "LeaseError",
    "CapabilityError",
    "GitHubError",
]
