"""
Chat Relay
==========
Real-time two-party messaging relay: live WebSocket sessions, durable
message history and out-of-conversation notifications.
"""

__version__ = "1.0.0"
