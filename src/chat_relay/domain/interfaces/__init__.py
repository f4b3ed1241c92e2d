"""
Domain Interfaces - Ports
=========================
"""

from .storage import IMessageStore

__all__ = ["IMessageStore"]
