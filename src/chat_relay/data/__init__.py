"""
Data layer: message store implementations.
"""

from .message_store import InMemoryMessageStore, PostgresMessageStore, create_message_store

__all__ = ["InMemoryMessageStore", "PostgresMessageStore", "create_message_store"]
