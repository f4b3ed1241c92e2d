"""
WebSocket Services
==================
Services for relay connection functionality.

Modules:
- heartbeat_service: Liveness monitor based on transport probes
"""

from .heartbeat_service import HeartbeatService, HeartbeatMetrics

__all__ = ['HeartbeatService', 'HeartbeatMetrics']
