"""
Domain Models - Core Business Entities
======================================
Pure data models representing business concepts.
"""

from .chat_message import ChatMessage

__all__ = ['ChatMessage']
