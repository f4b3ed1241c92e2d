"""
Chat Message Model
==================
Immutable record of one relayed message, as persisted by the message store.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Dict, Any

from ...core.time_manager import format_timestamp


@dataclass(frozen=True)
class ChatMessage:
    """
    One chat message between two users.

    `recipient` is None when the sender's session had no other participant
    at relay time. `id` is assigned by the store on save.
    """
    sender: str
    recipient: Optional[str]
    content: str
    timestamp: datetime
    reply_to: Optional[str] = None
    id: Optional[str] = None

    def with_id(self, message_id: str) -> 'ChatMessage':
        return replace(self, id=message_id)

    def to_dict(self) -> Dict[str, Any]:
        """History representation (camelCase keys, ISO timestamp)."""
        return {
            "id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "content": self.content,
            "replyTo": self.reply_to,
            "timestamp": format_timestamp(self.timestamp),
        }
