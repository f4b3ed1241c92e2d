"""
Live protocol frame definitions and builders.
"""

from .frames import (
    RegisterFrame,
    JoinFrame,
    MessageFrame,
    PingFrame,
    InboundFrame,
    parse_frame,
    registered_frame,
    joined_frame,
    chat_frame,
    pong_frame,
)

__all__ = [
    "RegisterFrame",
    "JoinFrame",
    "MessageFrame",
    "PingFrame",
    "InboundFrame",
    "parse_frame",
    "registered_frame",
    "joined_frame",
    "chat_frame",
    "pong_frame",
]
