"""
Storage Interfaces - Ports for message persistence
==================================================
Abstract interface for the durable message store used by the relay.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..models.chat_message import ChatMessage


class IMessageStore(ABC):
    """
    Append-only chat message storage.

    The relay only appends and queries; records are never updated or
    deleted through this interface.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection to storage"""
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage"""
        raise NotImplementedError

    @abstractmethod
    async def save(self, message: ChatMessage) -> str:
        """
        Persist a message and return its store-assigned id.

        Raises:
            StoreUnavailable: the store could not accept the write
        """
        raise NotImplementedError

    @abstractmethod
    async def find_between(self,
                           user_a: str,
                           user_b: str,
                           limit: int,
                           before: Optional[datetime] = None) -> List[ChatMessage]:
        """
        Messages exchanged between two users in either direction.

        `before` is an exclusive upper bound on timestamp. The `limit`
        newest matching messages are returned, ordered oldest-first.

        Raises:
            StoreUnavailable: the store could not answer the query
        """
        raise NotImplementedError

    @abstractmethod
    def get_storage_type(self) -> str:
        """Get storage type name"""
        raise NotImplementedError
