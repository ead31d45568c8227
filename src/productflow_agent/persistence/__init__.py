"""
Persistence package exposing the SQLite workflow store.
"""

from .database import create_session_factory, session_scope
from .store import WorkflowStore

__all__ = ["WorkflowStore", "create_session_factory", "session_scope"]
