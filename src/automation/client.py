"""
Azure Automation management API client.

Handles OAuth 2.0 client-credentials / managed identity authentication via
MSAL. Provides operations for runbooks and variable assets of a single
Automation account.
"""

import json
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
from urllib.parse import quote

import msal
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import DeleteOutcome, DeleteResult, Runbook

logger = logging.getLogger(__name__)


class AutomationAPIError(Exception):
    """Raised when the Azure management API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthenticationError(AutomationAPIError):
    """Raised when authentication fails."""
    pass


class AutomationClient:
    """
    Client for the Azure Automation REST API (Azure Resource Manager).

    Features:
    - Service principal or managed identity authentication with MSAL
    - Runbook create-or-replace, publish, tag and delete
    - Variable asset read/write for checkpoint storage
    - Polling of long-running (202 Accepted) operations

    Usage:
        client = AutomationClient(
            subscription_id="...",
            resource_group="rg-automation",
            account_name="aa-prod",
            tenant_id="...",
            client_id="...",
            client_secret="...",
        )
        client.authenticate()

        client.import_runbook("Restart-Service", content, runbook_type="PowerShell")
        client.set_runbook_tags("Restart-Service", {"owner": "ops"})
    """

    MANAGEMENT_URL = "https://management.azure.com"
    MANAGEMENT_SCOPE = "https://management.azure.com/.default"
    API_VERSION = "2023-11-01"
    ACCOUNT_PATH = (
        "/subscriptions/{subscription}/resourceGroups/{resource_group}"
        "/providers/Microsoft.Automation/automationAccounts/{account}"
    )
    RUNBOOK_ENDPOINT = "/runbooks/{name}"
    RUNBOOK_CONTENT_ENDPOINT = "/runbooks/{name}/draft/content"
    RUNBOOK_PUBLISH_ENDPOINT = "/runbooks/{name}/publish"
    VARIABLE_ENDPOINT = "/variables/{name}"

    def __init__(
        self,
        subscription_id: str,
        resource_group: str,
        account_name: str,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        location: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 0,
        operation_timeout: float = 300.0,
        poll_interval: float = 5.0,
    ):
        """
        Initialize Automation client.

        Args:
            subscription_id: Azure subscription ID
            resource_group: Resource group of the Automation account
            account_name: Automation account name
            tenant_id: Azure AD tenant ID (service principal auth)
            client_id: App registration client ID, or the user-assigned
                managed identity client ID when no secret is given
            client_secret: Client secret (never logged); None selects managed identity
            location: Azure region; read from the account when None
            timeout: Request timeout in seconds
            max_retries: Transport-level retries for transient failures
            operation_timeout: Max seconds to wait for a long-running operation
            poll_interval: Default delay between operation polls
        """
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.account_name = account_name
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval

        self._location = location
        self._access_token: Optional[str] = None

        self._session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            raise_on_status=False,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "PUT", "PATCH", "DELETE"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self._session.mount("https://", adapter)

        self._msal_app = self._build_msal_app()

        logger.info(f"Automation client initialized for account {account_name}")

    def __repr__(self) -> str:
        return (
            f"AutomationClient(subscription_id='{self.subscription_id}', "
            f"resource_group='{self.resource_group}', account_name='{self.account_name}')"
        )

    @property
    def uses_managed_identity(self) -> bool:
        return not self._client_secret

    @property
    def account_url(self) -> str:
        return self.MANAGEMENT_URL + self.ACCOUNT_PATH.format(
            subscription=self.subscription_id,
            resource_group=self.resource_group,
            account=self.account_name,
        )

    # ============================================================
    # Authentication
    # ============================================================

    def _build_msal_app(self):
        """Pick the MSAL application for the configured credential."""
        if self._client_secret:
            if not self.tenant_id or not self.client_id:
                raise AuthenticationError(
                    "tenant_id and client_id are required for service principal auth"
                )
            return msal.ConfidentialClientApplication(
                self.client_id,
                client_credential=self._client_secret,
                authority=f"https://login.microsoftonline.com/{self.tenant_id}",
            )

        if self.client_id:
            identity = msal.UserAssignedManagedIdentity(client_id=self.client_id)
        else:
            identity = msal.SystemAssignedManagedIdentity()
        return msal.ManagedIdentityClient(identity, http_client=self._session)

    def authenticate(self) -> None:
        """
        Acquire an Azure Resource Manager access token.

        Raises:
            AuthenticationError: If authentication fails
        """
        logger.info("Authenticating with Azure Resource Manager...")

        if self.uses_managed_identity:
            result = self._msal_app.acquire_token_for_client(resource=self.MANAGEMENT_URL)
        else:
            result = self._msal_app.acquire_token_for_client(scopes=[self.MANAGEMENT_SCOPE])

        if result and "access_token" in result:
            self._access_token = result["access_token"]
            logger.info("Authentication successful")
            return

        result = result or {}
        error_msg = result.get("error_description", result.get("error", "Unknown error"))
        logger.error(f"Authentication failed: {error_msg}")
        raise AuthenticationError(f"Authentication failed: {error_msg}")

    def _get_headers(self, content_type: str = "application/json") -> dict[str, str]:
        """Get request headers with authorization."""
        if not self._access_token:
            raise AuthenticationError("Not authenticated. Call authenticate() first.")
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": content_type,
        }

    # ============================================================
    # HTTP plumbing
    # ============================================================

    def _send(
        self,
        method: str,
        url: str,
        data: Optional[dict] = None,
        text: Optional[str] = None,
        content_type: str = "application/json",
        params: Optional[dict] = None,
        _reauthenticated: bool = False,
    ) -> requests.Response:
        """
        Send an authenticated request and return the raw response.

        Raises:
            AutomationAPIError: If the request fails
        """
        try:
            response = self._session.request(
                method=method,
                url=url,
                headers=self._get_headers(content_type),
                json=data if text is None else None,
                data=text.encode("utf-8") if text is not None else None,
                params=params,
                timeout=self.timeout,
            )

            # Token expired mid-run
            if response.status_code == 401 and not _reauthenticated:
                logger.info("Token expired, refreshing...")
                self._access_token = None
                self.authenticate()
                return self._send(
                    method, url, data=data, text=text, content_type=content_type,
                    params=params, _reauthenticated=True,
                )

            response.raise_for_status()
            return response

        except requests.exceptions.HTTPError as e:
            error_msg = f"Automation API error: {e}"
            error_code = None

            try:
                error_body = e.response.json()
                if "error" in error_body:
                    error_msg = f"Automation API error: {error_body['error'].get('message', str(e))}"
                    error_code = error_body["error"].get("code")
            except (ValueError, AttributeError):
                pass

            raise AutomationAPIError(
                error_msg,
                status_code=e.response.status_code if e.response is not None else None,
                error_code=error_code,
            ) from e

        except requests.exceptions.RequestException as e:
            error_msg = f"Automation request failed: {e}"
            logger.error(error_msg)
            raise AutomationAPIError(error_msg) from e

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
    ) -> Optional[dict]:
        """
        Make a JSON request against the Automation account.

        Args:
            method: HTTP method (GET, PUT, PATCH, DELETE)
            endpoint: Path relative to the account URL ("" for the account)
            data: Request body

        Returns:
            Parsed JSON response, or None for empty responses
        """
        response = self._send(
            method,
            f"{self.account_url}{endpoint}",
            data=data,
            params={"api-version": self.API_VERSION},
        )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _retry_after(self, response: requests.Response) -> float:
        """Seconds to wait before the next poll, from delta-seconds or an HTTP date."""
        value = response.headers.get("Retry-After")
        if not value:
            return self.poll_interval

        try:
            return max(float(value), 0.0)
        except ValueError:
            pass

        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparseable Retry-After header: {value}")
            return self.poll_interval

        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)

    def _wait_for_operation(self, response: requests.Response, description: str) -> None:
        """
        Poll a 202 Accepted operation until it completes.

        Raises:
            AutomationAPIError: If the operation fails or times out
        """
        if response.status_code != 202:
            return

        location = response.headers.get("Location") or response.headers.get("Azure-AsyncOperation")
        if not location:
            return

        deadline = time.monotonic() + self.operation_timeout
        while True:
            delay = self._retry_after(response)
            if time.monotonic() + delay > deadline:
                raise AutomationAPIError(f"Timed out waiting for {description}")

            logger.debug(f"Waiting {delay}s for {description}...")
            time.sleep(delay)

            response = self._send("GET", location)
            if response.status_code != 202:
                break

        if response.content:
            try:
                body = response.json()
            except ValueError:
                return
            status = body.get("status") if isinstance(body, dict) else None
            if status and status not in ("Succeeded", "Completed"):
                error = body.get("error") or {}
                raise AutomationAPIError(
                    f"{description} ended with status {status}: {error.get('message', '')}".rstrip(": "),
                    error_code=error.get("code"),
                )

    # ============================================================
    # Account
    # ============================================================

    def get_account(self) -> dict:
        """Fetch the Automation account resource."""
        return self._make_request("GET", "")

    @property
    def location(self) -> str:
        """Azure region of the account, read once and cached."""
        if not self._location:
            account = self.get_account() or {}
            self._location = account.get("location")
            if not self._location:
                raise AutomationAPIError(f"Automation account {self.account_name} has no location")
        return self._location

    # ============================================================
    # Runbook Operations
    # ============================================================

    def get_runbook(self, name: str) -> Optional[Runbook]:
        """
        Fetch a runbook's metadata.

        Args:
            name: Runbook name

        Returns:
            Runbook object, or None if not found
        """
        endpoint = self.RUNBOOK_ENDPOINT.format(name=quote(name, safe=""))

        try:
            response = self._make_request("GET", endpoint)
        except AutomationAPIError as e:
            if e.status_code == 404:
                logger.debug(f"Runbook {name} does not exist")
                return None
            raise

        return Runbook.from_api_response(response)

    def delete_runbook(self, name: str) -> DeleteResult:
        """
        Delete a runbook. A missing runbook counts as already deleted.

        Args:
            name: Runbook name

        Returns:
            DeleteResult; errors are reported, not raised
        """
        logger.info(f"Deleting runbook {name}")

        endpoint = self.RUNBOOK_ENDPOINT.format(name=quote(name, safe=""))

        try:
            self._make_request("DELETE", endpoint)
        except AutomationAPIError as e:
            if e.status_code == 404:
                logger.info(f"Runbook {name} already absent")
                return DeleteResult(name=name, outcome=DeleteOutcome.ALREADY_ABSENT)
            logger.error(f"Failed to delete runbook {name}: {e}")
            return DeleteResult(name=name, outcome=DeleteOutcome.FAILED, message=str(e))

        return DeleteResult(name=name, outcome=DeleteOutcome.DELETED)

    def import_runbook(
        self,
        name: str,
        content: str,
        runbook_type: str = "PowerShell",
        published: bool = True,
        description: str = "",
    ) -> Runbook:
        """
        Create or replace a runbook with the given script content.

        The runbook resource is recreated (dropping tags), its draft content
        uploaded and, if requested, published.

        Args:
            name: Runbook name
            content: Script text
            runbook_type: Runbook type
            published: Publish the draft after upload
            description: Optional runbook description

        Returns:
            Runbook as returned by the create call
        """
        logger.info(f"Importing runbook {name} ({runbook_type})")

        quoted = quote(name, safe="")

        response = self._make_request(
            "PUT",
            self.RUNBOOK_ENDPOINT.format(name=quoted),
            data=Runbook.create_payload(name, runbook_type, self.location, description),
        )
        runbook = Runbook.from_api_response(response) if response else Runbook(name=name, runbook_type=runbook_type)

        upload = self._send(
            "PUT",
            f"{self.account_url}{self.RUNBOOK_CONTENT_ENDPOINT.format(name=quoted)}",
            text=content,
            content_type="text/powershell",
            params={"api-version": self.API_VERSION},
        )
        self._wait_for_operation(upload, f"content upload of {name}")

        if published:
            publish = self._send(
                "POST",
                f"{self.account_url}{self.RUNBOOK_PUBLISH_ENDPOINT.format(name=quoted)}",
                params={"api-version": self.API_VERSION},
            )
            self._wait_for_operation(publish, f"publish of {name}")
            logger.info(f"Published runbook {name}")

        return runbook

    def set_runbook_tags(self, name: str, tags: dict[str, str]) -> Runbook:
        """
        Replace a runbook's tags.

        Args:
            name: Runbook name
            tags: Tag mapping to apply

        Returns:
            Updated runbook
        """
        logger.info(f"Setting {len(tags)} tag(s) on runbook {name}")

        response = self._make_request(
            "PATCH",
            self.RUNBOOK_ENDPOINT.format(name=quote(name, safe="")),
            data={"tags": dict(tags)},
        )
        if response:
            return Runbook.from_api_response(response)
        return Runbook(name=name, tags=dict(tags))

    # ============================================================
    # Variable Operations
    # ============================================================

    def get_variable(self, name: str) -> Optional[str]:
        """
        Read a string variable asset.

        Returns:
            The variable's value, or None if missing, unset or encrypted
        """
        endpoint = self.VARIABLE_ENDPOINT.format(name=quote(name, safe=""))

        try:
            response = self._make_request("GET", endpoint)
        except AutomationAPIError as e:
            if e.status_code == 404:
                return None
            raise

        properties = (response or {}).get("properties") or {}
        if properties.get("isEncrypted"):
            logger.warning(f"Variable {name} is encrypted and cannot be read via the management API")
            return None

        raw = properties.get("value")
        if raw is None:
            return None

        # Values are stored JSON-serialized
        try:
            value = json.loads(raw)
        except ValueError:
            return raw
        return value if isinstance(value, str) else str(value)

    def set_variable(self, name: str, value: str) -> None:
        """Create or update an unencrypted string variable asset."""
        logger.debug(f"Setting variable {name}")

        self._make_request(
            "PUT",
            self.VARIABLE_ENDPOINT.format(name=quote(name, safe="")),
            data={
                "name": name,
                "properties": {
                    "value": json.dumps(value),
                    "isEncrypted": False,
                },
            },
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()
        logger.debug("Automation client session closed")

    def __enter__(self) -> "AutomationClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
