"""
GitLab REST API v4 client.

Read-only access to commits, compares and file contents of one project.
The private token is sent as a query parameter and never logged.
"""

import logging
from typing import Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import Commit, FileChange, RepositoryFile

logger = logging.getLogger(__name__)


class GitLabAPIError(Exception):
    """Raised when the GitLab API is unreachable or returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GitLabClient:
    """
    Client for the GitLab REST API v4, scoped to a single project.

    Usage:
        client = GitLabClient(
            base_url="https://gitlab.example.com",
            project_id="infra/runbooks",
            access_token="...",
        )

        head = client.get_branch_head("main")
        for change in client.compare(previous_sha, head.id):
            print(change.path, change.is_deleted)
    """

    API_PREFIX = "/api/v4"
    PROJECT_ENDPOINT = "/projects/{project}"
    BRANCH_COMMIT_ENDPOINT = "/projects/{project}/repository/commits/{ref}"
    COMPARE_ENDPOINT = "/projects/{project}/repository/compare"
    FILE_ENDPOINT = "/projects/{project}/repository/files/{path}"

    def __init__(
        self,
        base_url: str,
        project_id: str,
        access_token: str,
        timeout: float = 30.0,
        max_retries: int = 0,
    ):
        """
        Initialize GitLab client.

        Args:
            base_url: GitLab instance URL (e.g., https://gitlab.com)
            project_id: Numeric project ID or "group/project" path
            access_token: Private or project access token (never logged)
            timeout: Request timeout in seconds
            max_retries: Transport-level retries for transient failures
        """
        self.base_url = base_url.rstrip("/")
        self.project_id = str(project_id)
        self._access_token = access_token
        self.timeout = timeout

        self._session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            raise_on_status=False,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

        self._session.headers.update({"Accept": "application/json"})

        logger.info(f"GitLab client initialized for {self.base_url} (project {self.project_id})")

    def __repr__(self) -> str:
        """Never expose token in repr."""
        return f"GitLabClient(base_url='{self.base_url}', project_id='{self.project_id}')"

    @property
    def _project(self) -> str:
        return quote(self.project_id, safe="")

    def _redact(self, text: str) -> str:
        """Strip the token from messages that may embed a request URL."""
        if self._access_token:
            return text.replace(self._access_token, "***REDACTED***")
        return text

    def _make_request(
        self,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> dict | list:
        """
        Make authenticated GET request to the GitLab API.

        Args:
            endpoint: API endpoint path, relative to /api/v4
            params: Query parameters

        Returns:
            Parsed JSON response

        Raises:
            GitLabAPIError: If the request fails
        """
        url = f"{self.base_url}{self.API_PREFIX}{endpoint}"
        query = dict(params or {})
        query["private_token"] = self._access_token

        try:
            response = self._session.get(url, params=query, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            error_msg = f"GitLab API error: {self._redact(str(e))}"
            try:
                error_body = e.response.json()
                if isinstance(error_body, dict):
                    detail = error_body.get("message") or error_body.get("error")
                    if detail:
                        error_msg = f"GitLab API error: {detail}"
            except (ValueError, AttributeError):
                pass

            logger.error(error_msg)
            raise GitLabAPIError(
                error_msg,
                status_code=e.response.status_code if e.response is not None else None,
            ) from e

        except requests.exceptions.RequestException as e:
            error_msg = f"GitLab request failed: {self._redact(str(e))}"
            logger.error(error_msg)
            raise GitLabAPIError(error_msg) from e

        except ValueError as e:
            error_msg = f"GitLab returned invalid JSON for {endpoint}: {e}"
            logger.error(error_msg)
            raise GitLabAPIError(error_msg) from e

    def get_project(self) -> dict:
        """Fetch the project resource (used for default_branch)."""
        return self._make_request(self.PROJECT_ENDPOINT.format(project=self._project))

    def get_default_branch(self) -> str:
        """
        Return the project's default branch name.

        Raises:
            GitLabAPIError: If the project has no default branch
        """
        branch = self.get_project().get("default_branch")
        if not branch:
            raise GitLabAPIError(f"Project {self.project_id} has no default branch")
        return branch

    def get_branch_head(self, branch: str) -> Commit:
        """
        Fetch the latest commit on a branch.

        Args:
            branch: Branch name

        Returns:
            Head Commit of the branch
        """
        logger.debug(f"Fetching head commit of {branch}")

        endpoint = self.BRANCH_COMMIT_ENDPOINT.format(
            project=self._project,
            ref=quote(branch, safe=""),
        )
        data = self._make_request(endpoint)

        try:
            return Commit.from_api_response(data)
        except (KeyError, TypeError, ValueError) as e:
            raise GitLabAPIError(f"Malformed commit response for {branch}: {e}") from e

    def compare(self, from_ref: str, to_ref: str) -> list[FileChange]:
        """
        Compare two references and return the changed files.

        Args:
            from_ref: Older commit SHA
            to_ref: Newer commit SHA

        Returns:
            FileChange entries in the order GitLab reports them
        """
        logger.debug(f"Comparing {from_ref[:8]}..{to_ref[:8]}")

        data = self._make_request(
            self.COMPARE_ENDPOINT.format(project=self._project),
            params={"from": from_ref, "to": to_ref},
        )

        changes = []
        for diff in data.get("diffs", []):
            try:
                changes.append(FileChange.from_api_response(diff))
            except KeyError as e:
                logger.warning(f"Skipping malformed diff entry: missing {e}")
                continue

        logger.info(f"Compare {from_ref[:8]}..{to_ref[:8]}: {len(changes)} changed files")
        return changes

    def get_file(self, path: str, ref: str) -> RepositoryFile:
        """
        Fetch a file's content at a reference.

        Args:
            path: Repository-relative file path
            ref: Commit SHA or branch

        Returns:
            RepositoryFile with decoded text content

        Raises:
            GitLabAPIError: If the file cannot be fetched or decoded
        """
        logger.debug(f"Fetching {path} at {ref[:8]}")

        endpoint = self.FILE_ENDPOINT.format(
            project=self._project,
            path=quote(path, safe=""),
        )
        data = self._make_request(endpoint, params={"ref": ref})

        try:
            return RepositoryFile.from_api_response(data, ref=ref)
        except ValueError as e:
            raise GitLabAPIError(str(e)) from e

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()
        logger.debug("GitLab client session closed")

    def __enter__(self) -> "GitLabClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
