"""
Azure Automation data models.

These models represent Runbooks and the outcome of remote operations
against an Automation account.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class RunbookState(Enum):
    """Runbook publication state."""
    NEW = "New"
    EDIT = "Edit"
    PUBLISHED = "Published"


class DeleteOutcome(Enum):
    """Result of deleting a runbook."""
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"
    FAILED = "failed"


@dataclass(frozen=True)
class DeleteResult:
    """
    Tri-state delete result.

    A missing runbook is not an error: the target is already in the
    desired state.
    """
    name: str
    outcome: DeleteOutcome
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (DeleteOutcome.DELETED, DeleteOutcome.ALREADY_ABSENT)


@dataclass(frozen=True)
class Runbook:
    """
    Represents an Azure Automation Runbook.

    Attributes:
        name: Runbook name (script base name)
        tags: Resource tags, not preserved by create-or-replace
        runbook_type: PowerShell, PowerShell72, Python3, ...
        state: Publication state
        location: Azure region of the Automation account
        id: ARM resource ID
    """
    name: str
    tags: dict[str, str] = field(default_factory=dict)
    runbook_type: str = "PowerShell"
    state: Optional[RunbookState] = None
    location: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_published(self) -> bool:
        return self.state == RunbookState.PUBLISHED

    @classmethod
    def from_api_response(cls, data: dict) -> "Runbook":
        """Create Runbook from ARM API response."""
        properties = data.get("properties") or {}

        state = None
        if properties.get("state"):
            try:
                state = RunbookState(properties["state"])
            except ValueError:
                state = None

        return cls(
            name=data["name"],
            tags=dict(data.get("tags") or {}),
            runbook_type=properties.get("runbookType", "PowerShell"),
            state=state,
            location=data.get("location"),
            id=data.get("id"),
        )

    @staticmethod
    def create_payload(name: str, runbook_type: str, location: str, description: str = "") -> dict:
        """
        Build the create-or-replace request body.

        Tags are deliberately absent; callers reapply them separately.
        """
        payload = {
            "name": name,
            "location": location,
            "properties": {
                "runbookType": runbook_type,
                "logProgress": False,
                "logVerbose": False,
                "draft": {},
            },
        }
        if description:
            payload["properties"]["description"] = description
        return payload
