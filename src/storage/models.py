"""
Persistent state storage models.

The sync job keeps a single checkpoint, the last synced commit SHA, as a
named variable in a key/value store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class StoredVariable:
    """
    A named string value held by a state store.

    Attributes:
        key: Variable name (e.g. "GitLabLastCommitSha")
        value: Stored string value
        updated_at: Timestamp of the last write
        created_at: When this record was created
    """
    key: str
    value: str
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: tuple) -> "StoredVariable":
        """Create from SQLite row tuple."""
        key, value, updated_at, created_at = row

        return cls(
            key=key,
            value=value,
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            created_at=datetime.fromisoformat(created_at) if created_at else None,
        )
