"""
Configuration settings with environment variable loading.

All secrets MUST be provided via environment variables.
Never log or expose tokens in any output.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class GitLabConfig:
    """GitLab repository configuration."""
    project_id: str
    access_token: str
    base_url: str = "https://gitlab.com"
    branch: Optional[str] = None

    def __post_init__(self):
        if not self.base_url:
            raise ConfigurationError("GITLAB_BASE_URL is required")
        if not self.project_id:
            raise ConfigurationError("GITLAB_PROJECT_ID is required")
        if not self.access_token:
            raise ConfigurationError("GITLAB_ACCESS_TOKEN is required")
        if not self.base_url.startswith("https://"):
            raise ConfigurationError("GITLAB_BASE_URL must use HTTPS")

    def __repr__(self) -> str:
        """Never expose token in repr."""
        return (
            f"GitLabConfig(base_url='{self.base_url}', project_id='{self.project_id}', "
            f"branch={self.branch!r}, access_token='***REDACTED***')"
        )


@dataclass(frozen=True)
class AzureConfig:
    """Azure Automation account configuration."""
    subscription_id: str
    resource_group: str
    automation_account: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    location: Optional[str] = None

    def __post_init__(self):
        if not self.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required")
        if not self.resource_group:
            raise ConfigurationError("AZURE_RESOURCE_GROUP is required")
        if not self.automation_account:
            raise ConfigurationError("AZURE_AUTOMATION_ACCOUNT is required")
        if self.client_secret and not (self.tenant_id and self.client_id):
            raise ConfigurationError(
                "AZURE_TENANT_ID and AZURE_CLIENT_ID are required with AZURE_CLIENT_SECRET"
            )

    @property
    def uses_managed_identity(self) -> bool:
        return not self.client_secret

    def __repr__(self) -> str:
        """Safe repr without sensitive data."""
        client = f"'{self.client_id[:8]}...'" if self.client_id else None
        return (
            f"AzureConfig(subscription_id='{self.subscription_id}', "
            f"resource_group='{self.resource_group}', "
            f"automation_account='{self.automation_account}', client_id={client}, "
            f"auth={'managed_identity' if self.uses_managed_identity else 'client_secret'})"
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration."""
    script_extension: str = ".ps1"
    runbook_type: str = "PowerShell"
    state_key: str = "GitLabLastCommitSha"
    dry_run: bool = False
    max_retries: int = 0
    http_timeout: float = 30.0

    def __post_init__(self):
        if not self.script_extension.startswith("."):
            raise ConfigurationError("SYNC_SCRIPT_EXTENSION must start with '.'")
        if not self.state_key:
            raise ConfigurationError("SYNC_STATE_KEY must not be empty")
        if self.max_retries < 0:
            raise ConfigurationError("SYNC_MAX_RETRIES must be >= 0")


@dataclass(frozen=True)
class StorageConfig:
    """Checkpoint storage configuration."""
    backend: str = "automation"
    database_path: Path = field(default_factory=lambda: Path("data/sync_state.db"))

    BACKENDS = ("automation", "sqlite")

    def __post_init__(self):
        object.__setattr__(self, 'database_path', Path(self.database_path))
        if self.backend not in self.BACKENDS:
            raise ConfigurationError(
                f"STORAGE_BACKEND must be one of {', '.join(self.BACKENDS)}, got '{self.backend}'"
            )


@dataclass(frozen=True)
class Settings:
    """
    Application settings container.

    All configuration is loaded from environment variables.
    Secrets are never logged or exposed.
    """
    gitlab: GitLabConfig
    azure: AzureConfig
    sync: SyncConfig
    storage: StorageConfig
    log_level: str = "INFO"

    def __repr__(self) -> str:
        return (
            f"Settings(\n"
            f"  gitlab={self.gitlab},\n"
            f"  azure={self.azure},\n"
            f"  sync={self.sync},\n"
            f"  storage={self.storage}\n"
            f")"
        )


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load settings from environment variables.

    Optionally loads from a .env file first.

    Args:
        env_file: Optional path to .env file

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If required configuration is missing
    """
    if env_file and env_file.exists():
        _load_env_file(env_file)
    elif Path(".env").exists():
        _load_env_file(Path(".env"))

    try:
        gitlab = GitLabConfig(
            base_url=os.getenv("GITLAB_BASE_URL", "https://gitlab.com").rstrip("/"),
            project_id=os.getenv("GITLAB_PROJECT_ID", ""),
            access_token=os.getenv("GITLAB_ACCESS_TOKEN", ""),
            branch=os.getenv("GITLAB_BRANCH") or None,
        )

        azure = AzureConfig(
            subscription_id=os.getenv("AZURE_SUBSCRIPTION_ID", ""),
            resource_group=os.getenv("AZURE_RESOURCE_GROUP", ""),
            automation_account=os.getenv("AZURE_AUTOMATION_ACCOUNT", ""),
            tenant_id=os.getenv("AZURE_TENANT_ID") or None,
            client_id=os.getenv("AZURE_CLIENT_ID") or None,
            client_secret=os.getenv("AZURE_CLIENT_SECRET") or None,
            location=os.getenv("AZURE_LOCATION") or None,
        )

        sync = SyncConfig(
            script_extension=os.getenv("SYNC_SCRIPT_EXTENSION", ".ps1"),
            runbook_type=os.getenv("SYNC_RUNBOOK_TYPE", "PowerShell"),
            state_key=os.getenv("SYNC_STATE_KEY", "GitLabLastCommitSha"),
            dry_run=os.getenv("SYNC_DRY_RUN", "false").lower() == "true",
            max_retries=int(os.getenv("SYNC_MAX_RETRIES", "0")),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "30")),
        )

        storage = StorageConfig(
            backend=os.getenv("STORAGE_BACKEND", "automation").lower(),
            database_path=Path(os.getenv("STORAGE_DATABASE_PATH", "data/sync_state.db")),
        )

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        settings = Settings(
            gitlab=gitlab,
            azure=azure,
            sync=sync,
            storage=storage,
            log_level=log_level,
        )

        logger.info("Configuration loaded successfully")
        logger.debug(f"Settings: {settings}")

        return settings

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


def _load_env_file(path: Path) -> None:
    """
    Load environment variables from a file.

    Simple .env parser that handles:
    - KEY=value
    - KEY="quoted value"
    - # comments
    - Empty lines
    """
    logger.debug(f"Loading environment from {path}")

    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            if not line or line.startswith("#"):
                continue

            if "=" not in line:
                logger.warning(f"Invalid line {line_num} in {path}: no '=' found")
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            if value.startswith('"') and value.endswith('"'):
                value = value[1:-1]
            elif value.startswith("'") and value.endswith("'"):
                value = value[1:-1]

            # Environment takes precedence
            if key not in os.environ:
                os.environ[key] = value
