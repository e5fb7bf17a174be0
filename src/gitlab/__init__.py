"""GitLab REST API client module."""

from .client import GitLabClient, GitLabAPIError
from .models import Commit, FileChange, RepositoryFile

__all__ = ["GitLabClient", "GitLabAPIError", "Commit", "FileChange", "RepositoryFile"]
