"""
Core Exceptions - Chat Relay
============================
Centralized exception definitions for the messaging relay.

All relay errors are handled where they occur (logged, at most answered
with an error frame); none of them is allowed to stop the connection loop
or the liveness monitor.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for relay operations."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class InvalidArgument(RelayError):
    """
    Raised when a frame or request is missing a required field or carries
    a malformed one.

    Live protocol: frame dropped silently.
    HTTP Status: 400 Bad Request
    """
    def __init__(self, field: str, reason: str = "required"):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid argument '{field}': {reason}")


class NotJoined(RelayError):
    """
    Raised when a content frame arrives on a connection that has not joined
    any session. There is no session context to relay against; the frame is
    dropped without a reply.
    """
    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Connection {client_id} has not joined a session")


class StoreUnavailable(RelayError):
    """
    Raised when the message store cannot complete an operation.

    Persisting a relayed message may fail without affecting live delivery:
    the message reaches online participants but is missing from history.
    """
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Message store unavailable during {operation}{detail}")


class DeadConnection(RelayError):
    """
    Raised when a connection stops acknowledging liveness probes or its
    outbound backlog overflows. Triggers session/registry cleanup; nothing
    is sent to the client since it is unreachable.
    """
    def __init__(self, client_id: str, reason: str):
        self.client_id = client_id
        self.reason = reason
        super().__init__(f"Connection {client_id} is dead: {reason}")


class MalformedFrame(InvalidArgument):
    """
    Raised when an inbound live-protocol frame is not valid JSON.

    This is the only inbound failure answered with an error frame.
    """
    def __init__(self, reason: str = "invalid json"):
        super().__init__("frame", reason)
