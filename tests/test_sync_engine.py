"""
Unit tests for the sync engine.

GitLab and Azure Automation are replaced with mocks; the checkpoint lives
in an in-memory store.
"""

import logging

import pytest
from unittest.mock import call

from src.automation.client import AutomationAPIError
from src.automation.models import DeleteOutcome, DeleteResult, Runbook
from src.gitlab.client import GitLabAPIError
from src.gitlab.models import FileChange, RepositoryFile
from src.sync.diff import ChangeType
from src.sync.engine import FileStatus, SyncEngine, SyncStateError

from conftest import ACCOUNT_URL, HEAD_SHA, PREVIOUS_SHA, InMemoryStore

STATE_KEY = "GitLabLastCommitSha"


@pytest.fixture
def engine(mock_gitlab, mock_automation, memory_store) -> SyncEngine:
    return SyncEngine(
        gitlab_client=mock_gitlab,
        automation_client=mock_automation,
        state_store=memory_store,
        branch="main",
        state_key=STATE_KEY,
    )


class TestCheckpoint:
    """Tests for reading and writing the last synced commit."""

    def test_empty_diff_updates_checkpoint_without_mutation(self, engine, mock_gitlab, mock_automation, memory_store):
        report = engine.sync()

        mock_gitlab.compare.assert_called_once_with(PREVIOUS_SHA, HEAD_SHA)
        mock_automation.delete_runbook.assert_not_called()
        mock_automation.import_runbook.assert_not_called()
        mock_automation.set_runbook_tags.assert_not_called()
        assert report.total == 0
        assert report.state_persisted is True
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_checkpoint_advances_after_changes(self, engine, mock_gitlab, memory_store):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]

        report = engine.sync()

        assert report.previous_ref == PREVIOUS_SHA
        assert report.current_ref == HEAD_SHA
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_head_failure_leaves_checkpoint_unchanged(self, engine, mock_gitlab, mock_automation, memory_store):
        mock_gitlab.get_branch_head.side_effect = GitLabAPIError("unreachable")

        with pytest.raises(GitLabAPIError):
            engine.sync()

        assert memory_store.get(STATE_KEY) == PREVIOUS_SHA
        assert memory_store.writes == []
        mock_gitlab.compare.assert_not_called()
        mock_automation.import_runbook.assert_not_called()

    def test_compare_failure_is_fatal(self, engine, mock_gitlab, memory_store):
        mock_gitlab.compare.side_effect = GitLabAPIError("compare failed", status_code=500)

        with pytest.raises(GitLabAPIError):
            engine.sync()

        assert memory_store.writes == []

    def test_missing_checkpoint_is_fatal(self, mock_gitlab, mock_automation):
        engine = SyncEngine(
            gitlab_client=mock_gitlab,
            automation_client=mock_automation,
            state_store=InMemoryStore(),
            branch="main",
        )

        with pytest.raises(SyncStateError, match="--from-ref"):
            engine.sync()

        mock_gitlab.get_branch_head.assert_not_called()

    def test_unreadable_checkpoint_is_fatal(self, mock_gitlab, mock_automation):
        store = InMemoryStore()

        def failing_get(key):
            raise AutomationAPIError("forbidden", status_code=403)

        store.get = failing_get
        engine = SyncEngine(mock_gitlab, mock_automation, store, branch="main")

        with pytest.raises(SyncStateError, match="forbidden"):
            engine.sync()

    def test_explicit_previous_ref_overrides_store(self, engine, mock_gitlab, memory_store):
        engine.sync(previous_ref="c" * 40)

        mock_gitlab.compare.assert_called_once_with("c" * 40, HEAD_SHA)
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_persist_failure_is_reported_not_raised(self, mock_gitlab, mock_automation):
        store = InMemoryStore({STATE_KEY: PREVIOUS_SHA})

        def failing_set(key, value):
            raise AutomationAPIError("write denied", status_code=403)

        store.set = failing_set
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        engine = SyncEngine(mock_gitlab, mock_automation, store, branch="main")

        report = engine.sync()

        assert report.state_persisted is False
        assert report.upserted == 1
        assert store.get(STATE_KEY) == PREVIOUS_SHA

    def test_default_branch_resolved_when_unset(self, mock_gitlab, mock_automation, memory_store):
        engine = SyncEngine(mock_gitlab, mock_automation, memory_store, branch=None)

        report = engine.sync()

        mock_gitlab.get_branch_head.assert_called_once_with("main")
        assert report.branch == "main"


class TestDelete:
    """Tests for deleted scripts."""

    def test_deleted_script_removes_runbook(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="jobs/Old-Job.ps1", is_deleted=True)]

        report = engine.sync()

        mock_automation.delete_runbook.assert_called_once_with("Old-Job")
        mock_gitlab.get_file.assert_not_called()
        assert report.deleted == 1
        assert report.results[0].status == FileStatus.SUCCESS

    def test_already_absent_runbook_does_not_fail(self, engine, mock_gitlab, mock_automation, memory_store):
        mock_gitlab.compare.return_value = [FileChange(path="Old-Job.ps1", is_deleted=True)]
        mock_automation.delete_runbook.side_effect = lambda name: DeleteResult(
            name=name, outcome=DeleteOutcome.ALREADY_ABSENT,
        )

        first = engine.sync(previous_ref=PREVIOUS_SHA)
        second = engine.sync(previous_ref=PREVIOUS_SHA)

        for report in (first, second):
            assert report.has_failures is False
            assert report.results[0].status == FileStatus.SUCCESS
            assert report.results[0].reason == "already absent"
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_failed_delete_continues(self, engine, mock_gitlab, mock_automation, memory_store):
        mock_gitlab.compare.return_value = [
            FileChange(path="Locked.ps1", is_deleted=True),
            FileChange(path="Restart-Service.ps1"),
        ]
        mock_automation.delete_runbook.side_effect = lambda name: DeleteResult(
            name=name, outcome=DeleteOutcome.FAILED, message="Runbook is running",
        )

        report = engine.sync()

        assert report.failed == 1
        assert report.results[0].reason == "Runbook is running"
        assert report.upserted == 1
        assert memory_store.get(STATE_KEY) == HEAD_SHA


class TestUpsert:
    """Tests for added or modified scripts."""

    def test_new_script_is_imported_and_published(self, engine, mock_gitlab, mock_automation, script_content):
        mock_gitlab.compare.return_value = [FileChange(path="scripts/Restart-Service.ps1", is_new=True)]

        report = engine.sync()

        mock_gitlab.get_file.assert_called_once_with("scripts/Restart-Service.ps1", HEAD_SHA)
        mock_automation.import_runbook.assert_called_once_with(
            "Restart-Service",
            script_content,
            runbook_type="PowerShell",
            published=True,
        )
        mock_automation.set_runbook_tags.assert_not_called()
        assert report.upserted == 1

    def test_existing_tags_survive_reimport(self, engine, mock_gitlab, mock_automation, script_content):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.return_value = Runbook(name="Restart-Service", tags={"a": "1"})

        report = engine.sync()

        assert mock_automation.mock_calls.index(
            call.import_runbook("Restart-Service", script_content, runbook_type="PowerShell", published=True)
        ) < mock_automation.mock_calls.index(call.set_runbook_tags("Restart-Service", {"a": "1"}))
        assert report.results[0].status == FileStatus.SUCCESS
        assert report.results[0].reason is None

    def test_untagged_existing_runbook_skips_tag_call(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.return_value = Runbook(name="Restart-Service", tags={})

        engine.sync()

        mock_automation.set_runbook_tags.assert_not_called()

    def test_fetch_failure_skips_file(self, engine, mock_gitlab, mock_automation, memory_store):
        mock_gitlab.compare.return_value = [
            FileChange(path="Broken.ps1"),
            FileChange(path="Restart-Service.ps1"),
        ]
        content = {"Restart-Service.ps1": "Write-Output ok"}

        def get_file(path, ref):
            if path not in content:
                raise GitLabAPIError("404 File Not Found", status_code=404)
            return RepositoryFile(path=path, ref=ref, content=content[path])

        mock_gitlab.get_file.side_effect = get_file

        report = engine.sync()

        assert report.results[0].status == FileStatus.SKIPPED
        assert "fetch failed" in report.results[0].reason
        assert report.results[1].status == FileStatus.SUCCESS
        mock_automation.import_runbook.assert_called_once()
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_lookup_failure_still_imports(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.side_effect = AutomationAPIError("throttled", status_code=429)

        report = engine.sync()

        mock_automation.import_runbook.assert_called_once()
        mock_automation.set_runbook_tags.assert_not_called()
        assert report.upserted == 1

    def test_import_failure_continues(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [
            FileChange(path="Bad.ps1"),
            FileChange(path="Good.ps1"),
        ]

        def import_runbook(name, content, **kwargs):
            if name == "Bad":
                raise AutomationAPIError("BadRequest", status_code=400)
            return Runbook(name=name)

        mock_automation.import_runbook.side_effect = import_runbook

        report = engine.sync()

        assert [r.status for r in report.results] == [FileStatus.FAILED, FileStatus.SUCCESS]
        assert report.has_failures is True
        assert report.failures[0].path == "Bad.ps1"

    def test_tag_restore_failure_is_non_fatal(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.return_value = Runbook(name="Restart-Service", tags={"a": "1"})
        mock_automation.set_runbook_tags.side_effect = AutomationAPIError("conflict", status_code=409)

        report = engine.sync()

        assert report.results[0].status == FileStatus.SUCCESS
        assert "tags not restored" in report.results[0].reason
        assert report.has_failures is False

    def test_import_failure_still_restores_tags(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.return_value = Runbook(name="Restart-Service", tags={"a": "1"})
        mock_automation.import_runbook.side_effect = AutomationAPIError("upload rejected", status_code=400)

        report = engine.sync()

        mock_automation.set_runbook_tags.assert_called_once_with("Restart-Service", {"a": "1"})
        assert report.results[0].status == FileStatus.FAILED
        assert "import failed" in report.results[0].reason

    def test_import_and_tag_failure_both_reported(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        mock_automation.get_runbook.return_value = Runbook(name="Restart-Service", tags={"a": "1"})
        mock_automation.import_runbook.side_effect = AutomationAPIError("upload rejected", status_code=400)
        mock_automation.set_runbook_tags.side_effect = AutomationAPIError("conflict", status_code=409)

        report = engine.sync()

        assert report.results[0].status == FileStatus.FAILED
        assert "tags not restored" in report.results[0].reason

    def test_renamed_script_logs_old_runbook(self, engine, mock_gitlab, mock_automation, caplog):
        mock_gitlab.compare.return_value = [FileChange(
            path="scripts/New-Name.ps1",
            old_path="scripts/Old-Name.ps1",
            is_renamed=True,
        )]

        with caplog.at_level(logging.WARNING, logger="src.sync.engine"):
            engine.sync()

        mock_automation.import_runbook.assert_called_once()
        mock_automation.delete_runbook.assert_not_called()
        assert "scripts/Old-Name.ps1 renamed to scripts/New-Name.ps1" in caplog.text
        assert "Old-Name is left in place" in caplog.text

    def test_unexpected_error_is_recorded(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="a.ps1"), FileChange(path="b.ps1")]
        mock_automation.get_runbook.side_effect = [RuntimeError("bug"), None]

        report = engine.sync()

        assert report.results[0].status == FileStatus.FAILED
        assert "RuntimeError" in report.results[0].reason
        assert report.results[1].status == FileStatus.SUCCESS


class TestTagsAgainstAutomationApi:
    """Tag preservation with the real Automation client over mocked HTTP."""

    RUNBOOK_URL = f"{ACCOUNT_URL}/runbooks/Restart-Service"

    @pytest.fixture
    def server_tags(self, requests_mock, runbook_response) -> dict:
        """Fake runbook resource whose tags follow the PUT and PATCH bodies."""
        state = {"tags": dict(runbook_response["tags"])}

        def current(request, context):
            return {**runbook_response, "tags": state["tags"]}

        def replace(request, context):
            state["tags"] = request.json().get("tags") or {}
            return current(request, context)

        requests_mock.get(self.RUNBOOK_URL, json=current)
        requests_mock.put(self.RUNBOOK_URL, json=replace)
        requests_mock.patch(self.RUNBOOK_URL, json=replace)
        return state

    def test_failed_upload_keeps_tags(
        self, automation_client, mock_gitlab, memory_store, requests_mock, server_tags,
    ):
        requests_mock.put(
            f"{self.RUNBOOK_URL}/draft/content",
            status_code=400,
            json={"error": {"code": "BadRequest", "message": "content rejected"}},
        )
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        engine = SyncEngine(mock_gitlab, automation_client, memory_store, branch="main")

        report = engine.sync()

        assert report.results[0].status == FileStatus.FAILED
        assert server_tags["tags"] == {"a": "1", "owner": "ops"}
        assert memory_store.get(STATE_KEY) == HEAD_SHA

    def test_successful_import_keeps_tags(
        self, automation_client, mock_gitlab, memory_store, requests_mock, server_tags,
    ):
        requests_mock.put(f"{self.RUNBOOK_URL}/draft/content", status_code=200)
        requests_mock.post(f"{self.RUNBOOK_URL}/publish", status_code=200)
        mock_gitlab.compare.return_value = [FileChange(path="Restart-Service.ps1")]
        engine = SyncEngine(mock_gitlab, automation_client, memory_store, branch="main")

        report = engine.sync()

        assert report.results[0].status == FileStatus.SUCCESS
        assert server_tags["tags"] == {"a": "1", "owner": "ops"}


class TestFilter:
    """Tests for non-script files and configuration knobs."""

    def test_non_script_takes_no_action(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [
            FileChange(path="README.md"),
            FileChange(path="docs/old.txt", is_deleted=True),
        ]

        report = engine.sync()

        mock_gitlab.get_file.assert_not_called()
        mock_automation.delete_runbook.assert_not_called()
        mock_automation.import_runbook.assert_not_called()
        assert report.ignored == 2
        assert all(r.change_type == ChangeType.IGNORE for r in report.results)

    def test_uppercase_extension_matches(self, engine, mock_gitlab, mock_automation):
        mock_gitlab.compare.return_value = [FileChange(path="Old-Job.PS1", is_deleted=True)]

        engine.sync()

        mock_automation.delete_runbook.assert_called_once_with("Old-Job")

    def test_custom_extension_and_runbook_type(self, mock_gitlab, mock_automation, memory_store, script_content):
        mock_gitlab.compare.return_value = [FileChange(path="job.py"), FileChange(path="job.ps1")]
        engine = SyncEngine(
            mock_gitlab, mock_automation, memory_store,
            branch="main",
            script_extension=".py",
            runbook_type="Python3",
        )

        report = engine.sync()

        mock_automation.import_runbook.assert_called_once_with(
            "job", script_content, runbook_type="Python3", published=True,
        )
        assert report.ignored == 1


class TestDryRun:
    """Tests for dry-run mode."""

    def test_dry_run_makes_no_changes(self, mock_gitlab, mock_automation, memory_store):
        mock_gitlab.compare.return_value = [
            FileChange(path="Restart-Service.ps1"),
            FileChange(path="Old-Job.ps1", is_deleted=True),
            FileChange(path="README.md"),
        ]
        engine = SyncEngine(mock_gitlab, mock_automation, memory_store, branch="main", dry_run=True)

        report = engine.sync()

        mock_automation.import_runbook.assert_not_called()
        mock_automation.delete_runbook.assert_not_called()
        mock_gitlab.get_file.assert_not_called()
        assert memory_store.writes == []
        assert report.state_persisted is False
        assert report.skipped == 2
        assert report.ignored == 1


def test_report_str_summarizes(engine, mock_gitlab):
    mock_gitlab.compare.return_value = [FileChange(path="a.ps1"), FileChange(path="b.md")]

    report = engine.sync()

    text = str(report)
    assert PREVIOUS_SHA[:8] in text
    assert "1 imported" in text
    assert "1 ignored" in text
