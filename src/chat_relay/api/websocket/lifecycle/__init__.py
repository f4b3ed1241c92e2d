"""
Relay State Management
======================
Components holding the relay's shared in-memory state.

Components:
- SessionTable: sessions, their participants and attached connections
- SocketRegistry: user id to the connection used for notifications
- RelayState: single-lock owner of both tables and of connection tags
"""

from .session_table import Session, SessionTable
from .socket_registry import SocketRegistry
from .relay_state import RelayState, RelayPlan, JoinResult, EvictionResult, ConnectionTag

__all__ = [
    "Session",
    "SessionTable",
    "SocketRegistry",
    "RelayState",
    "RelayPlan",
    "JoinResult",
    "EvictionResult",
    "ConnectionTag",
]
