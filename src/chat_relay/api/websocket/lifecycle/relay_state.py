"""
RelayState - Shared Session and Registry State
==============================================
Service object owning the Session Table and the Socket Registry behind a
single asyncio.Lock. The connection handler, the liveness monitor and the
session bootstrap endpoint all go through it; nothing else mutates the
tables.

Every critical section is synchronous and in-memory. Callers must not hold
the lock across persistence or transport I/O: operations return plain
snapshots (RelayPlan, EvictionResult) that are acted on after release.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from ....core.exceptions import InvalidArgument, NotJoined
from ....core.time_manager import utc_now
from .session_table import Session, SessionTable
from .socket_registry import SocketRegistry


@dataclass
class ConnectionTag:
    """What a connection has identified itself as."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    registered_as: Optional[str] = None


@dataclass(frozen=True)
class RelayPlan:
    """Everything needed to relay one message, captured under the lock."""
    session_id: str
    sender: str
    recipient: Optional[str]
    timestamp: datetime
    targets: Tuple[str, ...]
    notify_client_id: Optional[str]


@dataclass(frozen=True)
class JoinResult:
    session_id: str
    created: bool
    evicted_client_ids: Tuple[str, ...] = ()
    replaced_registration: Optional[str] = None


@dataclass(frozen=True)
class EvictionResult:
    client_id: str
    sessions: Tuple[str, ...] = ()
    unregistered_users: Tuple[str, ...] = ()


class RelayState:
    """
    Concurrency-safe owner of sessions, registry bindings and connection tags.

    Invariants maintained under the lock:
    - a user has at most one connection across all session socket sets
    - every attached connection is tagged with a user who is a participant
    - the registry holds the latest connection to register or join per user
    """

    def __init__(self, logger=None):
        self.logger = logger
        self.sessions = SessionTable(logger=logger)
        self.registry = SocketRegistry()
        self._tags: Dict[str, ConnectionTag] = {}
        self._users: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Live protocol operations
    # ------------------------------------------------------------------

    async def register(self, client_id: str, user_id: str) -> Optional[str]:
        """
        Bind `client_id` as the notification target for `user_id`.

        Returns:
            The previously bound client id, if it was a different connection
        """
        if not user_id:
            raise InvalidArgument("userId")

        async with self._lock:
            tag = self._tags.setdefault(client_id, ConnectionTag())
            self._release_identities(client_id, tag, user_id)
            tag.registered_as = user_id
            previous = self.registry.bind(user_id, client_id)

        if self.logger:
            self.logger.debug("relay_state.registered", {
                "client_id": client_id,
                "user_id": user_id,
                "replaced_client_id": previous
            })
        return previous

    async def join(self,
                   client_id: str,
                   user_id: str,
                   session_id: str,
                   other_user_id: Optional[str] = None) -> JoinResult:
        """
        Attach `client_id` to `session_id` as `user_id`.

        Creates the session if unknown and appends missing participants.
        Detaches this connection from its previous sessions and every other
        connection tagged with `user_id` from all sessions, then binds the
        registry entry for `user_id` to this connection.
        """
        if not user_id:
            raise InvalidArgument("userId")
        if not session_id:
            raise InvalidArgument("sessionId")

        async with self._lock:
            created = self.sessions.get(session_id) is None

            self.sessions.detach_everywhere(client_id)
            evicted = []
            for other_client_id in self._clients_tagged_as(user_id):
                if other_client_id != client_id and self.sessions.detach_everywhere(other_client_id):
                    evicted.append(other_client_id)

            peer = other_user_id if other_user_id and other_user_id != user_id else None
            self.sessions.ensure(session_id, (user_id, peer))
            self.sessions.attach(session_id, client_id)

            tag = self._tags.setdefault(client_id, ConnectionTag())
            self._release_identities(client_id, tag, user_id)
            if tag.user_id and tag.user_id != user_id:
                self._untag_user(client_id, tag.user_id)
            tag.user_id = user_id
            tag.registered_as = user_id
            tag.session_id = session_id
            self._users.setdefault(user_id, set()).add(client_id)

            replaced = self.registry.bind(user_id, client_id)

        if self.logger:
            self.logger.debug("relay_state.joined", {
                "client_id": client_id,
                "user_id": user_id,
                "session_id": session_id,
                "session_created": created,
                "evicted_client_ids": evicted
            })
        return JoinResult(
            session_id=session_id,
            created=created,
            evicted_client_ids=tuple(evicted),
            replaced_registration=replaced
        )

    async def plan_relay(self, client_id: str) -> RelayPlan:
        """
        Resolve sender, recipient, fan-out targets and the message timestamp.

        The timestamp is read once here so fan-out, notification and the
        persisted record all carry the same instant.

        Raises:
            NotJoined: the connection has not joined a session
        """
        async with self._lock:
            tag = self._tags.get(client_id)
            if tag is None or not tag.session_id or not tag.user_id:
                raise NotJoined(client_id)

            session = self.sessions.get(tag.session_id)
            if session is None:
                raise NotJoined(client_id)

            recipient = session.peer_of(tag.user_id)
            targets = tuple(session.sockets)
            notify_client_id = None
            if recipient:
                registered = self.registry.lookup(recipient)
                if registered and registered not in session.sockets:
                    notify_client_id = registered

            return RelayPlan(
                session_id=session.session_id,
                sender=tag.user_id,
                recipient=recipient,
                timestamp=utc_now(),
                targets=targets,
                notify_client_id=notify_client_id
            )

    async def evict(self, client_id: str) -> EvictionResult:
        """
        Forget a closed or dead connection.

        Removes it from every session's socket set and from the registry for
        each user it is currently the registered handle of. Idempotent.
        """
        async with self._lock:
            sessions = self.sessions.detach_everywhere(client_id)
            tag = self._tags.pop(client_id, None)
            unregistered = []
            if tag:
                for user_id in {tag.user_id, tag.registered_as}:
                    if self.registry.unbind_if_current(user_id, client_id):
                        unregistered.append(user_id)
                if tag.user_id:
                    self._untag_user(client_id, tag.user_id)

        return EvictionResult(
            client_id=client_id,
            sessions=tuple(sorted(sessions)),
            unregistered_users=tuple(unregistered)
        )

    # ------------------------------------------------------------------
    # Session bootstrap
    # ------------------------------------------------------------------

    async def create_or_get_session(self, user_id_1: Optional[str], user_id_2: Optional[str]) -> Tuple[str, bool]:
        """
        Return the session whose participants are exactly {user_id_1, user_id_2},
        creating an empty one with a fresh id if none exists.

        Returns:
            (session_id, created)

        Raises:
            InvalidArgument: an id is missing, blank, not a string, or both are equal
        """
        for field_name, value in (("userId1", user_id_1), ("userId2", user_id_2)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidArgument(field_name)
        if user_id_1 == user_id_2:
            raise InvalidArgument("userId2", "must differ from userId1")

        async with self._lock:
            existing = self.sessions.find_by_participants(user_id_1, user_id_2)
            if existing:
                return existing.session_id, False
            session = self.sessions.create(participants=(user_id_1, user_id_2))
            return session.session_id, True

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Copy of a session, safe to read outside the lock."""
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            return Session(
                session_id=session.session_id,
                participants=list(session.participants),
                sockets=set(session.sockets),
                created_at=session.created_at
            )

    async def registered_client(self, user_id: str) -> Optional[str]:
        async with self._lock:
            return self.registry.lookup(user_id)

    async def sessions_of(self, client_id: str) -> Set[str]:
        async with self._lock:
            return self.sessions.sessions_of(client_id)

    async def get_tag(self, client_id: str) -> Optional[ConnectionTag]:
        async with self._lock:
            tag = self._tags.get(client_id)
            return ConnectionTag(**vars(tag)) if tag else None

    def get_stats(self) -> Dict[str, int]:
        stats = self.sessions.get_stats()
        stats["registered_users"] = len(self.registry)
        stats["tagged_connections"] = len(self._tags)
        return stats

    def _clients_tagged_as(self, user_id: str) -> List[str]:
        return list(self._users.get(user_id, ()))

    def _untag_user(self, client_id: str, user_id: str):
        clients = self._users.get(user_id)
        if clients is not None:
            clients.discard(client_id)
            if not clients:
                del self._users[user_id]

    def _release_identities(self, client_id: str, tag: ConnectionTag, user_id: str):
        # A connection is the registered handle of at most one user.
        for old_user_id in {tag.user_id, tag.registered_as} - {None, user_id}:
            self.registry.unbind_if_current(old_user_id, client_id)
