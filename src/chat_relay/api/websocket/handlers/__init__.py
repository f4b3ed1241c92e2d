"""
Relay Message Handlers
======================
Specialized handlers for live protocol frames.

- ChatMessageHandler: register, join and message relay
- ProtocolMessageHandler: client ping/pong
"""

from .chat_handler import ChatMessageHandler
from .protocol_handler import ProtocolMessageHandler

__all__ = ["ChatMessageHandler", "ProtocolMessageHandler"]
