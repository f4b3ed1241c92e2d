"""
SessionTable - Conversation Sessions and Their Attached Connections
===================================================================
In-memory map from session id to the participants of a conversation and the
live connections currently attached to it.

Sessions are created by the bootstrap endpoint or implicitly by the first
join naming an unknown id. They are never removed while the process runs;
an empty socket set is a valid state.

Not synchronized on its own: RelayState serializes every access.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from ....core.time_manager import format_timestamp, utc_now


@dataclass
class Session:
    """
    One conversation.

    participants: user ids in first-seen order, without duplicates
    sockets: client ids of connections attached to this session
    """
    session_id: str
    participants: List[str] = field(default_factory=list)
    sockets: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utc_now)

    def add_participant(self, user_id: Optional[str]) -> bool:
        if not user_id or user_id in self.participants:
            return False
        self.participants.append(user_id)
        return True

    def has_exact_participants(self, user_a: str, user_b: str) -> bool:
        return len(self.participants) == 2 and set(self.participants) == {user_a, user_b}

    def peer_of(self, user_id: Optional[str]) -> Optional[str]:
        """First participant that is not `user_id`."""
        for participant in self.participants:
            if participant != user_id:
                return participant
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "participants": list(self.participants),
            "sockets": sorted(self.sockets),
            "created_at": format_timestamp(self.created_at)
        }


class SessionTable:
    """
    Session storage with a reverse index from connection to sessions.

    The reverse index keeps eviction proportional to the sessions a
    connection is attached to rather than the size of the table.
    """

    def __init__(self, logger=None):
        """
        Initialize session table.

        Args:
            logger: Optional logger for diagnostics
        """
        self.logger = logger
        self._sessions: Dict[str, Session] = {}
        self._client_sessions: Dict[str, Set[str]] = {}

        # Statistics
        self._total_created = 0
        self._total_evictions = 0

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def create(self, participants: Iterable[str] = (), session_id: Optional[str] = None) -> Session:
        """Create a session with a fresh opaque id unless one is given."""
        session = Session(session_id=session_id or uuid.uuid4().hex)
        for user_id in participants:
            session.add_participant(user_id)
        self._sessions[session.session_id] = session
        self._total_created += 1

        if self.logger:
            self.logger.debug("session_table.session_created", {
                "session_id": session.session_id,
                "participants": session.participants,
                "total_sessions": len(self._sessions)
            })
        return session

    def ensure(self, session_id: str, participants: Iterable[Optional[str]]) -> Session:
        """
        Get or create `session_id`, adding any participants not yet present.
        Falsy ids are skipped.
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = self.create(session_id=session_id)
        for user_id in participants:
            session.add_participant(user_id)
        return session

    def find_by_participants(self, user_a: str, user_b: str) -> Optional[Session]:
        """Session whose participant set is exactly {user_a, user_b}."""
        for session in self._sessions.values():
            if session.has_exact_participants(user_a, user_b):
                return session
        return None

    def attach(self, session_id: str, client_id: str) -> None:
        session = self._sessions[session_id]
        session.sockets.add(client_id)
        self._client_sessions.setdefault(client_id, set()).add(session_id)

    def detach_everywhere(self, client_id: str) -> Set[str]:
        """
        Remove a connection from every session it is attached to.

        Returns:
            Ids of the sessions it was removed from
        """
        session_ids = self._client_sessions.pop(client_id, set())
        for session_id in session_ids:
            session = self._sessions.get(session_id)
            if session:
                session.sockets.discard(client_id)
        if session_ids:
            self._total_evictions += 1
        return session_ids

    def sessions_of(self, client_id: str) -> Set[str]:
        return set(self._client_sessions.get(client_id, ()))

    def __len__(self) -> int:
        return len(self._sessions)

    def get_stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "attached_connections": len(self._client_sessions),
            "total_sessions_created": self._total_created,
            "total_evictions": self._total_evictions
        }
