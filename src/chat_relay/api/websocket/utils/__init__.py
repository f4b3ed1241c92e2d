"""
WebSocket Utilities
===================
Shared utility functions and helpers.

Components:
- ErrorHandler: Error reply frames for the live protocol
- ClientUtils: Client information extraction (IP, metadata)
"""

from .error_handler import ErrorHandler
from .client_utils import ClientUtils

__all__ = ["ErrorHandler", "ClientUtils"]
