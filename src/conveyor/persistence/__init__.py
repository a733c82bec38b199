"""
Persistence package exposing the SQLAlchemy-backed run and slot stores.
"""

from .database import create_session_factory, session_scope
from .store import RunStore, SlotStore

__all__ = ["RunStore", "SlotStore", "create_session_factory", "session_scope"]
