"""
Live Relay Module
=================
WebSocket relay with separated concerns.

Architecture:
- relay_server.py: ChatRelayServer (orchestration and teardown)
- handlers/: Frame handlers (chat relay, ping)
- lifecycle/: Session table, socket registry and shared relay state
- protocol/: Inbound frame union and outbound frame builders
- services/: Liveness monitor
- utils/: Error replies, client metadata
"""

from .relay_server import ChatRelayServer

__all__ = ["ChatRelayServer"]
