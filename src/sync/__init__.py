"""Commit-diff sync engine module."""

from .engine import SyncEngine, SyncReport, SyncStateError, FileResult, FileStatus
from .diff import ChangeType, PlannedChange

__all__ = [
    "SyncEngine",
    "SyncReport",
    "SyncStateError",
    "FileResult",
    "FileStatus",
    "ChangeType",
    "PlannedChange",
]
