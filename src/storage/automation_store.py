"""
State store backed by Azure Automation variable assets.

Keeps the sync checkpoint in the Automation account itself, next to the
runbooks it describes.
"""

import logging
from typing import Optional

from ..automation.client import AutomationClient

logger = logging.getLogger(__name__)


class AutomationVariableStore:
    """
    VariableStore over an Automation account's variable assets.

    Variables are written unencrypted; the management API cannot read
    encrypted values back.
    """

    def __init__(self, client: AutomationClient):
        self.client = client

    def __repr__(self) -> str:
        return f"AutomationVariableStore(account_name='{self.client.account_name}')"

    def get(self, key: str) -> Optional[str]:
        return self.client.get_variable(key)

    def set(self, key: str, value: str) -> None:
        self.client.set_variable(key, value)
        logger.debug(f"Saved variable {key} to Automation account {self.client.account_name}")
