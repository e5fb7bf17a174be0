"""
Commit-diff sync engine.

Mirrors PowerShell scripts changed between two GitLab commits into
Azure Automation runbooks. Per-file failures never stop the run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..automation.client import AutomationAPIError, AutomationClient
from ..automation.models import DeleteOutcome
from ..gitlab.client import GitLabAPIError, GitLabClient
from ..gitlab.models import Commit
from ..storage.state_store import VariableStore
from .diff import ChangeType, PlannedChange, is_script_path, plan_changes, runbook_name_for

logger = logging.getLogger(__name__)


class SyncStateError(Exception):
    """Raised when the last synced commit cannot be resolved."""
    pass


class FileStatus(Enum):
    """Outcome of applying one planned change."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FileResult:
    """Result of one file's action."""
    path: str
    runbook_name: str
    change_type: ChangeType
    status: FileStatus
    reason: Optional[str] = None


@dataclass
class SyncReport:
    """Aggregate result of a sync run."""
    previous_ref: str
    current_ref: str
    branch: str
    results: list[FileResult] = field(default_factory=list)
    state_persisted: bool = False
    dry_run: bool = False

    def _count(self, change_type: ChangeType, status: FileStatus) -> int:
        return sum(
            1 for r in self.results
            if r.change_type == change_type and r.status == status
        )

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def upserted(self) -> int:
        return self._count(ChangeType.UPSERT, FileStatus.SUCCESS)

    @property
    def deleted(self) -> int:
        return self._count(ChangeType.DELETE, FileStatus.SUCCESS)

    @property
    def ignored(self) -> int:
        return sum(1 for r in self.results if r.change_type == ChangeType.IGNORE)

    @property
    def skipped(self) -> int:
        return sum(
            1 for r in self.results
            if r.status == FileStatus.SKIPPED and r.change_type != ChangeType.IGNORE
        )

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == FileStatus.FAILED)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def failures(self) -> list[FileResult]:
        return [r for r in self.results if r.status == FileStatus.FAILED]

    def __str__(self) -> str:
        return (
            f"Sync {self.previous_ref[:8]}..{self.current_ref[:8]}: "
            f"{self.total} changed files, {self.upserted} imported, "
            f"{self.deleted} deleted, {self.ignored} ignored, "
            f"{self.skipped} skipped, {self.failed} failed"
        )


class SyncEngine:
    """
    Orchestrates one GitLab → Azure Automation sync.

    Core principles:
    - Every runbook action is idempotent (delete-if-exists, create-or-replace)
    - A file's failure is recorded and the loop moves on
    - Only head/diff resolution failures abort the run
    - The checkpoint is written even when nothing changed

    Usage:
        engine = SyncEngine(
            gitlab_client=gitlab_client,
            automation_client=automation_client,
            state_store=state_store,
            branch="main",
        )

        report = engine.sync()
        print(report)
    """

    def __init__(
        self,
        gitlab_client: GitLabClient,
        automation_client: AutomationClient,
        state_store: VariableStore,
        branch: Optional[str] = None,
        state_key: str = "GitLabLastCommitSha",
        script_extension: str = ".ps1",
        runbook_type: str = "PowerShell",
        dry_run: bool = False,
    ):
        """
        Initialize sync engine.

        Args:
            gitlab_client: Configured GitLab API client
            automation_client: Authenticated Automation API client
            state_store: Store holding the last synced commit SHA
            branch: Watched branch; the project's default branch when None
            state_key: Variable name of the checkpoint
            script_extension: Suffix of files mirrored as runbooks
            runbook_type: Type used when creating runbooks
            dry_run: If True, don't make any changes
        """
        self.gitlab = gitlab_client
        self.automation = automation_client
        self.state_store = state_store
        self.branch = branch
        self.state_key = state_key
        self.script_extension = script_extension
        self.runbook_type = runbook_type
        self.dry_run = dry_run

    def sync(self, previous_ref: Optional[str] = None) -> SyncReport:
        """
        Execute one synchronization.

        Steps:
        1. Resolve the last synced commit
        2. Resolve the head of the watched branch
        3. Compare the two and plan runbook actions
        4. Apply each action, recording per-file results
        5. Persist the head as the new checkpoint

        Args:
            previous_ref: Overrides the stored checkpoint for this run

        Returns:
            SyncReport with one result per changed file

        Raises:
            SyncStateError: If no previous commit is known
            GitLabAPIError: If the head or the diff cannot be fetched
        """
        if self.dry_run:
            logger.info("DRY RUN MODE - No changes will be made")

        # Step 1: Last synced commit
        previous = previous_ref or self._load_previous_ref()

        # Step 2: Current head
        branch = self._resolve_branch()
        try:
            head = self.gitlab.get_branch_head(branch)
        except GitLabAPIError as e:
            logger.error(f"Failed to fetch head of {branch}: {e}")
            raise
        logger.info(f"Head of {branch}: {head.short_id} {head.title}")

        report = SyncReport(
            previous_ref=previous,
            current_ref=head.id,
            branch=branch,
            dry_run=self.dry_run,
        )

        # Step 3: Diff
        try:
            changes = self.gitlab.compare(previous, head.id)
        except GitLabAPIError as e:
            logger.error(f"Failed to compare {previous[:8]}..{head.short_id}: {e}")
            raise

        if not changes:
            logger.info("No file changes since last sync")

        # Step 4: Apply
        for planned in plan_changes(changes, self.script_extension):
            try:
                result = self._apply(planned, head)
            except Exception as e:
                logger.error(f"Error processing {planned.change.path}: {e}", exc_info=True)
                result = FileResult(
                    path=planned.change.path,
                    runbook_name=planned.runbook_name,
                    change_type=planned.change_type,
                    status=FileStatus.FAILED,
                    reason=f"{type(e).__name__}: {e}",
                )
            report.results.append(result)

        # Step 5: Checkpoint
        report.state_persisted = self._persist(head)

        logger.info(str(report))

        if report.has_failures:
            logger.warning(f"Sync completed with {report.failed} errors")
            for failure in report.failures:
                logger.warning(f"  - {failure.path}: {failure.reason}")

        return report

    def _load_previous_ref(self) -> str:
        try:
            previous = self.state_store.get(self.state_key)
        except Exception as e:
            logger.error(f"Failed to read {self.state_key}: {e}")
            raise SyncStateError(f"Cannot read sync state {self.state_key}: {e}") from e

        if not previous:
            raise SyncStateError(
                f"No previous commit stored under {self.state_key}; "
                f"seed it with --from-ref <sha>"
            )
        return previous

    def _resolve_branch(self) -> str:
        if self.branch:
            return self.branch

        try:
            self.branch = self.gitlab.get_default_branch()
        except GitLabAPIError as e:
            logger.error(f"Failed to resolve default branch: {e}")
            raise
        logger.info(f"Using default branch {self.branch}")
        return self.branch

    def _apply(self, planned: PlannedChange, head: Commit) -> FileResult:
        """
        Apply one planned change.

        Args:
            planned: Change and action to apply
            head: Commit whose content is imported

        Returns:
            FileResult describing what was done
        """
        path = planned.change.path

        old_path = planned.change.old_path
        if planned.change.is_renamed and old_path and is_script_path(old_path, self.script_extension):
            logger.warning(
                f"{old_path} renamed to {path}; runbook "
                f"{runbook_name_for(old_path)} is left in place"
            )

        if planned.change_type == ChangeType.IGNORE:
            logger.debug(f"Ignoring non-script file {path}")
            return self._result(planned, FileStatus.SKIPPED, "not a script")

        if self.dry_run:
            logger.info(f"DRY RUN: Would {planned.change_type.value} runbook {planned.runbook_name} ({path})")
            return self._result(planned, FileStatus.SKIPPED, "dry run")

        if planned.change_type == ChangeType.DELETE:
            return self._delete_runbook(planned)

        return self._upsert_runbook(planned, head)

    def _delete_runbook(self, planned: PlannedChange) -> FileResult:
        outcome = self.automation.delete_runbook(planned.runbook_name)

        if outcome.outcome == DeleteOutcome.FAILED:
            return self._result(planned, FileStatus.FAILED, outcome.message or "delete failed")

        if outcome.outcome == DeleteOutcome.ALREADY_ABSENT:
            return self._result(planned, FileStatus.SUCCESS, "already absent")

        logger.info(f"Deleted runbook {planned.runbook_name}")
        return self._result(planned, FileStatus.SUCCESS)

    def _upsert_runbook(self, planned: PlannedChange, head: Commit) -> FileResult:
        path = planned.change.path
        name = planned.runbook_name

        try:
            script = self.gitlab.get_file(path, head.id)
        except GitLabAPIError as e:
            logger.error(f"Failed to fetch {path} at {head.short_id}: {e}")
            return self._result(planned, FileStatus.SKIPPED, f"fetch failed: {e}")

        try:
            existing = self.automation.get_runbook(name)
        except AutomationAPIError as e:
            logger.warning(f"Could not look up runbook {name}, existing tags will not be kept: {e}")
            existing = None

        try:
            self.automation.import_runbook(
                name,
                script.content,
                runbook_type=self.runbook_type,
                published=True,
            )
        except AutomationAPIError as e:
            logger.error(f"Failed to import runbook {name}: {e}")
            reason = f"import failed: {e}"
            # The create call may already have replaced the runbook without tags
            if existing is not None and existing.tags:
                tag_error = self._restore_tags(name, existing.tags)
                if tag_error:
                    reason = f"{reason}; tags not restored: {tag_error}"
            return self._result(planned, FileStatus.FAILED, reason)

        if planned.change.is_new:
            logger.info(f"Imported new runbook {name} from {path}")
        else:
            logger.info(f"Imported runbook {name} from {path}")

        if existing is not None and existing.tags:
            tag_error = self._restore_tags(name, existing.tags)
            if tag_error:
                return self._result(planned, FileStatus.SUCCESS, f"tags not restored: {tag_error}")

        return self._result(planned, FileStatus.SUCCESS)

    def _restore_tags(self, name: str, tags: dict[str, str]) -> Optional[str]:
        """Reapply tags to a runbook. Returns the error message on failure."""
        try:
            self.automation.set_runbook_tags(name, tags)
        except AutomationAPIError as e:
            logger.error(f"Failed to restore tags on runbook {name}: {e}")
            return str(e)
        return None

    def _persist(self, head: Commit) -> bool:
        if self.dry_run:
            logger.info(f"DRY RUN: Would store {self.state_key}={head.id}")
            return False

        try:
            self.state_store.set(self.state_key, head.id)
        except Exception as e:
            logger.error(f"Failed to store {self.state_key}={head.id}: {e}")
            return False

        logger.info(f"Stored {self.state_key}={head.id}")
        return True

    @staticmethod
    def _result(planned: PlannedChange, status: FileStatus, reason: Optional[str] = None) -> FileResult:
        return FileResult(
            path=planned.change.path,
            runbook_name=planned.runbook_name,
            change_type=planned.change_type,
            status=status,
            reason=reason,
        )
