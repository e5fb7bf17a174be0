"""
Pytest configuration and shared fixtures.

Provides mocks and test data for GitLab/Azure Automation API testing.
"""

import base64
import pytest
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import MagicMock, patch
import tempfile

from src.automation.client import AutomationClient
from src.automation.models import DeleteOutcome, DeleteResult, Runbook
from src.gitlab.client import GitLabClient
from src.gitlab.models import Commit, FileChange, RepositoryFile
from src.storage.state_store import StateStore


PREVIOUS_SHA = "a" * 40
HEAD_SHA = "b" * 40

GITLAB_API = "https://gitlab.example.com/api/v4/projects/123"
ACCOUNT_URL = (
    "https://management.azure.com/subscriptions/sub-123/resourceGroups/rg-auto"
    "/providers/Microsoft.Automation/automationAccounts/aa-test"
)


class InMemoryStore:
    """Dict-backed VariableStore."""

    def __init__(self, initial: Optional[dict] = None):
        self.data = dict(initial or {})
        self.writes = []

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.writes.append((key, value))
        self.data[key] = value


# ============================================================================
# Environment Fixtures
# ============================================================================

@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Set a complete, valid environment."""
    monkeypatch.chdir(tmp_path)
    for key in ("AZURE_CLIENT_SECRET", "AZURE_TENANT_ID", "AZURE_CLIENT_ID", "GITLAB_BRANCH",
                "STORAGE_BACKEND", "SYNC_DRY_RUN", "SYNC_MAX_RETRIES", "AZURE_LOCATION"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GITLAB_BASE_URL", "https://gitlab.test")
    monkeypatch.setenv("GITLAB_PROJECT_ID", "infra/runbooks")
    monkeypatch.setenv("GITLAB_ACCESS_TOKEN", "test_token")
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "sub-123")
    monkeypatch.setenv("AZURE_RESOURCE_GROUP", "rg-auto")
    monkeypatch.setenv("AZURE_AUTOMATION_ACCOUNT", "aa-test")
    monkeypatch.setenv("SYNC_STATE_KEY", "TestLastCommit")


# ============================================================================
# GitLab Fixtures
# ============================================================================

@pytest.fixture
def gitlab_client() -> Generator[GitLabClient, None, None]:
    """GitLab client against a fake instance."""
    client = GitLabClient(
        base_url="https://gitlab.example.com",
        project_id="123",
        access_token="glpat-secret",
    )
    yield client
    client.close()


@pytest.fixture
def head_commit() -> Commit:
    return Commit(id=HEAD_SHA, short_id=HEAD_SHA[:8], title="Update runbooks")


@pytest.fixture
def commit_response() -> dict:
    """Sample GitLab API commit response."""
    return {
        "id": HEAD_SHA,
        "short_id": HEAD_SHA[:8],
        "title": "Update runbooks",
        "author_name": "Ops Bot",
    }


@pytest.fixture
def compare_response() -> dict:
    """Sample GitLab API compare response."""
    return {
        "commit": {"id": HEAD_SHA},
        "diffs": [
            {
                "old_path": "Restart-Service.ps1",
                "new_path": "Restart-Service.ps1",
                "new_file": False,
                "renamed_file": False,
                "deleted_file": False,
            },
            {
                "old_path": "Old-Job.PS1",
                "new_path": "Old-Job.PS1",
                "new_file": False,
                "renamed_file": False,
                "deleted_file": True,
            },
            {
                "old_path": "README.md",
                "new_path": "README.md",
                "new_file": False,
                "renamed_file": False,
                "deleted_file": False,
            },
        ],
    }


@pytest.fixture
def script_content() -> str:
    return "param([string]$Name)\nRestart-Service -Name $Name\n"


@pytest.fixture
def file_response(script_content: str) -> dict:
    """Sample GitLab API repository file response."""
    return {
        "file_name": "Restart-Service.ps1",
        "file_path": "Restart-Service.ps1",
        "encoding": "base64",
        "ref": HEAD_SHA,
        "content": base64.b64encode(script_content.encode("utf-8")).decode("ascii"),
    }


# ============================================================================
# Azure Automation Fixtures
# ============================================================================

@pytest.fixture
def msal_app() -> Generator[MagicMock, None, None]:
    """Patched MSAL confidential client returning a token."""
    with patch("src.automation.client.msal.ConfidentialClientApplication") as app_cls:
        app = app_cls.return_value
        app.acquire_token_for_client.return_value = {"access_token": "arm-token"}
        yield app


@pytest.fixture
def automation_client(msal_app: MagicMock) -> Generator[AutomationClient, None, None]:
    """Authenticated Automation client with a fixed location."""
    client = AutomationClient(
        subscription_id="sub-123",
        resource_group="rg-auto",
        account_name="aa-test",
        tenant_id="tenant-id",
        client_id="client-id",
        client_secret="client-secret",
        location="westeurope",
        poll_interval=0,
    )
    client.authenticate()
    yield client
    client.close()


@pytest.fixture
def runbook_response() -> dict:
    """Sample ARM runbook response."""
    return {
        "id": f"/subscriptions/sub-123/resourceGroups/rg-auto/providers/Microsoft.Automation/automationAccounts/aa-test/runbooks/Restart-Service",
        "name": "Restart-Service",
        "location": "westeurope",
        "tags": {"a": "1", "owner": "ops"},
        "properties": {
            "runbookType": "PowerShell",
            "state": "Published",
        },
    }


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore({"GitLabLastCommitSha": PREVIOUS_SHA})


@pytest.fixture
def mock_gitlab(head_commit: Commit, script_content: str) -> MagicMock:
    """GitLab client mock with an empty diff."""
    gitlab = MagicMock(spec=GitLabClient)
    gitlab.get_branch_head.return_value = head_commit
    gitlab.get_default_branch.return_value = "main"
    gitlab.compare.return_value = []
    gitlab.get_file.side_effect = lambda path, ref: RepositoryFile(
        path=path, ref=ref, content=script_content,
    )
    return gitlab


@pytest.fixture
def mock_automation() -> MagicMock:
    """Automation client mock where nothing exists yet."""
    automation = MagicMock(spec=AutomationClient)
    automation.get_runbook.return_value = None
    automation.delete_runbook.side_effect = lambda name: DeleteResult(
        name=name, outcome=DeleteOutcome.DELETED,
    )
    automation.import_runbook.side_effect = lambda name, content, **kwargs: Runbook(name=name)
    return automation


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)
    yield path
    for candidate in (path, Path(f"{path}-wal"), Path(f"{path}-shm")):
        if candidate.exists():
            candidate.unlink()


@pytest.fixture
def state_store(temp_db_path: Path) -> StateStore:
    """Create a fresh StateStore with temp database."""
    return StateStore(temp_db_path)


@pytest.fixture
def file_change() -> FileChange:
    return FileChange(path="scripts/Restart-Service.ps1")
