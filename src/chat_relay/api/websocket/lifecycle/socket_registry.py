"""
SocketRegistry - user id to the connection that most recently registered or
joined as that user. Used to reach a user who is online but not attached to
the session a message was sent in.
"""

from typing import Dict, Optional


class SocketRegistry:
    """At most one connection per user; the latest binding wins."""

    def __init__(self):
        self._by_user: Dict[str, str] = {}

    def bind(self, user_id: str, client_id: str) -> Optional[str]:
        """
        Bind `user_id` to `client_id`.

        Returns:
            The client id previously bound, if it was a different connection
        """
        previous = self._by_user.get(user_id)
        self._by_user[user_id] = client_id
        return previous if previous != client_id else None

    def lookup(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        return self._by_user.get(user_id)

    def unbind_if_current(self, user_id: Optional[str], client_id: str) -> bool:
        """Drop the binding only if it still points at `client_id`."""
        if user_id and self._by_user.get(user_id) == client_id:
            del self._by_user[user_id]
            return True
        return False

    def __len__(self) -> int:
        return len(self._by_user)
