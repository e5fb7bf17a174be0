"""Azure Automation management API client module."""

from .client import AutomationClient, AutomationAPIError, AuthenticationError
from .models import DeleteOutcome, DeleteResult, Runbook, RunbookState

__all__ = [
    "AutomationClient",
    "AutomationAPIError",
    "AuthenticationError",
    "DeleteOutcome",
    "DeleteResult",
    "Runbook",
    "RunbookState",
]
