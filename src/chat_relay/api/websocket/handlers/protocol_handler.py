"""
ProtocolMessageHandler - Live Protocol Housekeeping
===================================================
Handles client-initiated `ping` frames.

The reply is diagnostic only: no session or registry state changes, and
it is unrelated to the server's transport-level liveness probes.
"""

from typing import Any, Dict

from ....core.time_manager import utc_now
from ..protocol.frames import PingFrame, pong_frame


class ProtocolMessageHandler:
    """Handles protocol-level messages."""

    def __init__(self, logger=None):
        self.logger = logger

    async def handle_ping(self, client_id: str, frame: PingFrame) -> Dict[str, Any]:
        """
        Answer a client ping.

        Response:
        {
            "type": "pong",
            "timestamp": "2026-10-19T12:00:00.000Z"
        }
        """
        if self.logger:
            self.logger.debug("relay_protocol.ping_received", {
                "client_id": client_id
            })
        return pong_frame(utc_now())
