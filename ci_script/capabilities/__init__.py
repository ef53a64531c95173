"""Host objects and modules exposed to job scripts."""

from ci_script.capabilities.cargo import CargoResult
from ci_script.capabilities.git import DirEntry, DirEntryPath, Git, LocalRepo, Status
from ci_script.capabilities.issue import IssueHandle

__all__ = [
    "CargoResult",
    "DirEntry",
    "DirEntryPath",
    "Git",
    "IssueHandle",
    "LocalRepo",
    "Status",
]
