"""Persistent state storage module."""

from .automation_store import AutomationVariableStore
from .state_store import StateStore, StateStoreError, VariableStore
from .models import StoredVariable

__all__ = [
    "AutomationVariableStore",
    "StateStore",
    "StateStoreError",
    "StoredVariable",
    "VariableStore",
]
