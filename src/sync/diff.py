"""
Change planning for the sync engine.

Maps the file-level diff between two commits onto runbook actions.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath

from ..gitlab.models import FileChange


class ChangeType(Enum):
    """Action to take for one changed file."""

    # Script was deleted - remove the runbook
    DELETE = "delete"

    # Script was added or modified - create or replace the runbook
    UPSERT = "upsert"

    # Not a script - nothing to do
    IGNORE = "ignore"


@dataclass(frozen=True)
class PlannedChange:
    """
    A file change paired with the runbook action it implies.

    Attributes:
        change: The diffed file
        change_type: Action to apply
        runbook_name: Target runbook (file base name without extension)
    """
    change: FileChange
    change_type: ChangeType
    runbook_name: str

    @property
    def requires_action(self) -> bool:
        return self.change_type != ChangeType.IGNORE

    def __repr__(self) -> str:
        return (
            f"PlannedChange(path={self.change.path!r}, "
            f"change_type={self.change_type.name}, runbook={self.runbook_name!r})"
        )


def is_script_path(path: str, extension: str = ".ps1") -> bool:
    """Case-insensitive suffix match against the script extension."""
    return path.lower().endswith(extension.lower())


def runbook_name_for(path: str) -> str:
    """
    Derive the runbook name from a file path.

    Only the last extension is stripped: "scripts/Get.Report.ps1" -> "Get.Report".
    """
    return PurePosixPath(path).stem


def plan_change(change: FileChange, extension: str = ".ps1") -> PlannedChange:
    """
    Decide the action for a single changed file.

    Rules:
    - Path does not end with the script extension → IGNORE
    - File deleted → DELETE
    - Anything else (added, modified, renamed) → UPSERT

    Args:
        change: File change from the compare
        extension: Script file extension to track

    Returns:
        PlannedChange for the file
    """
    name = runbook_name_for(change.path)

    if not is_script_path(change.path, extension):
        return PlannedChange(change=change, change_type=ChangeType.IGNORE, runbook_name=name)

    if change.is_deleted:
        return PlannedChange(change=change, change_type=ChangeType.DELETE, runbook_name=name)

    return PlannedChange(change=change, change_type=ChangeType.UPSERT, runbook_name=name)


def plan_changes(changes: list[FileChange], extension: str = ".ps1") -> list[PlannedChange]:
    """Plan every change, keeping diff order."""
    return [plan_change(change, extension) for change in changes]
