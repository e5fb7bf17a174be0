#!/usr/bin/env python3
"""
GitLab to Azure Automation Runbook Sync - Main Entry Point

Mirrors PowerShell scripts changed since the last synced commit of a GitLab
repository into an Azure Automation account as published Runbooks.

Usage:
    python -m src.main                      # Sync since stored commit
    python -m src.main --dry-run            # Preview changes without applying
    python -m src.main --from-ref <sha>     # Seed/override the previous commit
    python -m src.main --verbose            # Enable debug logging

Environment Variables Required:
    GITLAB_PROJECT_ID           - GitLab project ID or "group/project" path
    GITLAB_ACCESS_TOKEN         - GitLab private/project access token
    AZURE_SUBSCRIPTION_ID       - Subscription of the Automation account
    AZURE_RESOURCE_GROUP        - Resource group of the Automation account
    AZURE_AUTOMATION_ACCOUNT    - Automation account name

See .env.example for all configuration options.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports if running as script
if __name__ == "__main__" and __package__ is None:
    PROJECT_ROOT = Path(__file__).parent.parent
    sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import load_settings, ConfigurationError, Settings
from src.automation.client import AutomationClient, AutomationAPIError, AuthenticationError
from src.gitlab.client import GitLabClient, GitLabAPIError
from src.storage.automation_store import AutomationVariableStore
from src.storage.state_store import StateStore, StateStoreError, VariableStore
from src.sync.engine import SyncEngine, SyncReport, SyncStateError


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, enable DEBUG level logging
        level_name: Level to use when not verbose
    """
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Sync GitLab PowerShell scripts to Azure Automation Runbooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m src.main                        # Sync since stored commit
    python -m src.main --dry-run              # Preview changes
    python -m src.main --from-ref 1a2b3c4d    # First run / re-sync from a commit
    python -m src.main --status               # Show stored commit
        """,
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without making any modifications",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    parser.add_argument(
        "--env",
        type=Path,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--from-ref",
        metavar="SHA",
        help="Diff from this commit instead of the stored one",
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show the last synced commit without performing sync",
    )

    return parser.parse_args(argv)


def build_state_store(settings: Settings, automation_client: Optional[AutomationClient]) -> VariableStore:
    """Create the checkpoint store selected by STORAGE_BACKEND."""
    if settings.storage.backend == "sqlite":
        return StateStore(settings.storage.database_path)
    return AutomationVariableStore(automation_client)


def show_status(settings: Settings, state_store: VariableStore) -> None:
    """
    Display the stored checkpoint.

    Args:
        settings: Loaded settings
        state_store: State store to query
    """
    logger = logging.getLogger(__name__)

    key = settings.sync.state_key
    value = state_store.get(key)

    logger.info("=" * 50)
    logger.info("Sync Status")
    logger.info("=" * 50)
    logger.info(f"Project:           {settings.gitlab.project_id}")
    logger.info(f"Branch:            {settings.gitlab.branch or '(default)'}")
    logger.info(f"Automation account: {settings.azure.automation_account}")
    logger.info(f"Backend:           {settings.storage.backend}")
    logger.info(f"{key}: {value or '(not set)'}")
    logger.info("=" * 50)


def log_report(report: SyncReport) -> None:
    """Print the summary block of a finished run."""
    logger = logging.getLogger(__name__)

    logger.info("=" * 50)
    logger.info("Sync Summary")
    logger.info("=" * 50)
    logger.info(f"Branch:              {report.branch}")
    logger.info(f"Commits:             {report.previous_ref[:8]}..{report.current_ref[:8]}")
    logger.info(f"Changed files:       {report.total}")
    logger.info(f"Runbooks imported:   {report.upserted}")
    logger.info(f"Runbooks deleted:    {report.deleted}")
    logger.info(f"Ignored (no script): {report.ignored}")
    logger.info(f"Skipped:             {report.skipped}")
    logger.info(f"Errors:              {report.failed}")
    logger.info(f"Checkpoint stored:   {'yes' if report.state_persisted else 'no'}")
    logger.info("=" * 50)


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    logger.info("GitLab to Azure Automation Runbook Sync")
    logger.info("=" * 50)

    try:
        settings = load_settings(env_file=args.env)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Please check your .env file or environment variables")
        logger.error("See .env.example for required configuration")
        return 1

    setup_logging(verbose=args.verbose, level_name=settings.log_level)

    dry_run = args.dry_run or settings.sync.dry_run
    if dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    gitlab_client = None
    automation_client = None

    try:
        if args.status and settings.storage.backend == "sqlite":
            show_status(settings, build_state_store(settings, None))
            return 0

        logger.info("Initializing Automation client...")
        automation_client = AutomationClient(
            subscription_id=settings.azure.subscription_id,
            resource_group=settings.azure.resource_group,
            account_name=settings.azure.automation_account,
            tenant_id=settings.azure.tenant_id,
            client_id=settings.azure.client_id,
            client_secret=settings.azure.client_secret,
            location=settings.azure.location,
            timeout=settings.sync.http_timeout,
            max_retries=settings.sync.max_retries,
        )

        try:
            automation_client.authenticate()
        except AuthenticationError as e:
            logger.error(f"Azure authentication failed: {e}")
            return 1

        state_store = build_state_store(settings, automation_client)

        if args.status:
            show_status(settings, state_store)
            return 0

        logger.info("Initializing GitLab client...")
        gitlab_client = GitLabClient(
            base_url=settings.gitlab.base_url,
            project_id=settings.gitlab.project_id,
            access_token=settings.gitlab.access_token,
            timeout=settings.sync.http_timeout,
            max_retries=settings.sync.max_retries,
        )

        engine = SyncEngine(
            gitlab_client=gitlab_client,
            automation_client=automation_client,
            state_store=state_store,
            branch=settings.gitlab.branch,
            state_key=settings.sync.state_key,
            script_extension=settings.sync.script_extension,
            runbook_type=settings.sync.runbook_type,
            dry_run=dry_run,
        )

        logger.info("Starting synchronization...")
        report = engine.sync(previous_ref=args.from_ref)

        log_report(report)

        if report.has_failures:
            logger.warning("Some errors occurred during sync. Check logs above.")
            return 1

        logger.info("Sync completed successfully!")
        return 0

    except SyncStateError as e:
        logger.error(f"Sync state error: {e}")
        return 1
    except GitLabAPIError as e:
        logger.error(f"GitLab API error: {e}")
        return 1
    except AutomationAPIError as e:
        logger.error(f"Azure Automation API error: {e}")
        return 1
    except StateStoreError as e:
        logger.error(f"State store error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Sync interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
    finally:
        if gitlab_client:
            gitlab_client.close()
        if automation_client:
            automation_client.close()


if __name__ == "__main__":
    sys.exit(main())
