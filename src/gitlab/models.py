"""
GitLab repository data models.

These models represent the entities read from the GitLab REST API v4.
Commit SHAs are the sync checkpoints; file paths are repository-relative.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Commit:
    """
    Represents a GitLab commit.

    Attributes:
        id: Full commit SHA
        short_id: Abbreviated SHA for display
        title: First line of the commit message
    """
    id: str
    short_id: str = ""
    title: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Commit ID must be a non-empty string")

    @classmethod
    def from_api_response(cls, data: dict) -> "Commit":
        """Create Commit from GitLab API response."""
        return cls(
            id=data["id"],
            short_id=data.get("short_id") or data["id"][:8],
            title=data.get("title", ""),
        )


@dataclass(frozen=True)
class FileChange:
    """
    One path-level entry of a compare between two commits.

    Attributes:
        path: Path of the file after the change (GitLab new_path)
        is_deleted: Whether the file was deleted
        old_path: Path before the change, differs from path on renames
        is_new: Whether the file was added
        is_renamed: Whether the file was renamed
    """
    path: str
    is_deleted: bool = False
    old_path: Optional[str] = None
    is_new: bool = False
    is_renamed: bool = False

    @classmethod
    def from_api_response(cls, data: dict) -> "FileChange":
        """Create FileChange from one element of a compare's diffs list."""
        return cls(
            path=data["new_path"],
            is_deleted=bool(data.get("deleted_file", False)),
            old_path=data.get("old_path"),
            is_new=bool(data.get("new_file", False)),
            is_renamed=bool(data.get("renamed_file", False)),
        )


@dataclass(frozen=True)
class RepositoryFile:
    """
    A file's content at a given reference.

    Attributes:
        path: Repository-relative file path
        ref: Commit SHA or branch the content was read at
        content: Decoded text content
    """
    path: str
    ref: str
    content: str

    @classmethod
    def from_api_response(cls, data: dict, ref: str) -> "RepositoryFile":
        """
        Create RepositoryFile from GitLab API response.

        GitLab returns file content base64-encoded.

        Raises:
            ValueError: If the content cannot be decoded
        """
        raw = data.get("content", "")
        encoding = data.get("encoding", "base64")

        if encoding == "base64":
            try:
                content = base64.b64decode(raw).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ValueError(f"Undecodable content for {data.get('file_path')}: {e}") from e
        else:
            content = raw

        return cls(
            path=data.get("file_path", ""),
            ref=data.get("ref", ref),
            content=content,
        )
