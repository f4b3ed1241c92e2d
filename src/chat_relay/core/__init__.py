"""
Core module for the chat relay: logging, errors and time helpers.
"""

from .exceptions import (
    RelayError,
    InvalidArgument,
    NotJoined,
    StoreUnavailable,
    DeadConnection,
    MalformedFrame,
)

__all__ = [
    'RelayError',
    'InvalidArgument',
    'NotJoined',
    'StoreUnavailable',
    'DeadConnection',
    'MalformedFrame',
]
