"""
ChatMessageHandler - Register, Join and Message Relay
=====================================================
Per-frame logic of the live protocol.

Message relay order:
1. Resolve recipient, fan-out targets and the timestamp under the state lock
2. Start persistence as a background task (never awaited on the relay path)
3. Queue a `message` frame for every socket attached to the session,
   sender included
4. Queue a `notification` frame for the recipient's registered socket when
   it is live and not one of the sockets from step 3

Persistence failures are logged and do not affect delivery: a message may
reach online participants and still be missing from history.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from ....core.exceptions import StoreUnavailable
from ....domain.interfaces.storage import IMessageStore
from ....domain.models.chat_message import ChatMessage
from ..lifecycle.relay_state import RelayPlan, RelayState
from ..protocol.frames import (
    JoinFrame,
    MessageFrame,
    RegisterFrame,
    chat_frame,
    joined_frame,
    registered_frame,
)


class ChatMessageHandler:
    """
    Handles chat frames.

    Dependencies:
    - relay_state: Session table, socket registry and connection tags
    - connection_manager: Outbound queues of live connections
    - message_store: Durable message persistence
    - logger: For diagnostics
    """

    def __init__(self,
                 relay_state: RelayState,
                 connection_manager,
                 message_store: IMessageStore,
                 save_retries: int = 1,
                 logger=None):
        """
        Initialize chat handler.

        Args:
            relay_state: Shared relay state
            connection_manager: ConnectionManager used for fan-out
            message_store: Store receiving one record per relayed message
            save_retries: Extra save attempts after a StoreUnavailable
            logger: Optional logger for diagnostics
        """
        self.relay_state = relay_state
        self.connection_manager = connection_manager
        self.message_store = message_store
        self.save_retries = save_retries
        self.logger = logger

        self._pending_saves: Set[asyncio.Task] = set()

        # Statistics
        self.messages_relayed = 0
        self.notifications_sent = 0
        self.messages_persisted = 0
        self.persist_failures = 0

    async def handle_register(self, client_id: str, frame: RegisterFrame) -> Dict[str, Any]:
        """
        Bind this connection as the notification target for a user.

        Response:
        {"type": "registered", "userId": "alice"}
        """
        previous = await self.relay_state.register(client_id, frame.user_id)

        connection = await self.connection_manager.get_connection(client_id)
        if connection:
            connection.user_id = frame.user_id

        if self.logger:
            self.logger.info("chat_handler.registered", {
                "client_id": client_id,
                "user_id": frame.user_id,
                "replaced_client_id": previous
            })
        return registered_frame(frame.user_id)

    async def handle_join(self, client_id: str, frame: JoinFrame) -> Dict[str, Any]:
        """
        Attach this connection to a session.

        Response:
        {"type": "joined", "sessionId": "..."}
        """
        result = await self.relay_state.join(
            client_id,
            frame.user_id,
            frame.session_id,
            frame.other_user_id
        )

        connection = await self.connection_manager.get_connection(client_id)
        if connection:
            connection.user_id = frame.user_id
            connection.session_id = frame.session_id

        if self.logger:
            self.logger.info("chat_handler.joined", {
                "client_id": client_id,
                "user_id": frame.user_id,
                "session_id": result.session_id,
                "session_created": result.created,
                "evicted_client_ids": list(result.evicted_client_ids)
            })
        return joined_frame(result.session_id)

    async def handle_message(self, client_id: str, frame: MessageFrame) -> Optional[RelayPlan]:
        """
        Persist and relay one chat message. Produces no direct reply.

        Raises:
            NotJoined: connection has not joined a session
        """
        plan = await self.relay_state.plan_relay(client_id)

        record = ChatMessage(
            sender=plan.sender,
            recipient=plan.recipient,
            content=frame.content,
            reply_to=frame.reply_to,
            timestamp=plan.timestamp
        )
        self._schedule_persist(record)

        outbound = chat_frame("message", plan.sender, frame.content, frame.reply_to, plan.timestamp)
        delivered = await self.connection_manager.broadcast(list(plan.targets), outbound)
        self.messages_relayed += 1

        notified = False
        if plan.notify_client_id and await self.connection_manager.is_live(plan.notify_client_id):
            notification = chat_frame("notification", plan.sender, frame.content, frame.reply_to, plan.timestamp)
            notified = await self.connection_manager.send_to_client(plan.notify_client_id, notification)
            if notified:
                self.notifications_sent += 1

        if self.logger:
            self.logger.debug("chat_handler.message_relayed", {
                "client_id": client_id,
                "session_id": plan.session_id,
                "sender": plan.sender,
                "recipient": plan.recipient,
                "targets": len(plan.targets),
                "delivered": delivered,
                "notified": notified
            })
        return plan

    def _schedule_persist(self, message: ChatMessage):
        task = asyncio.create_task(self._persist(message))
        self._pending_saves.add(task)
        task.add_done_callback(self._on_persist_done)

    async def _persist(self, message: ChatMessage) -> Optional[str]:
        attempts = 1 + max(0, self.save_retries)
        for attempt in range(1, attempts + 1):
            try:
                message_id = await self.message_store.save(message)
            except StoreUnavailable as e:
                if attempt < attempts:
                    if self.logger:
                        self.logger.warning("chat_handler.persist_retry", {
                            "sender": message.sender,
                            "recipient": message.recipient,
                            "attempt": attempt,
                            "error": str(e)
                        })
                    continue
                self.persist_failures += 1
                # Delivered live but absent from history
                if self.logger:
                    self.logger.error("chat_handler.persist_failed", {
                        "sender": message.sender,
                        "recipient": message.recipient,
                        "timestamp": message.timestamp,
                        "attempts": attempts,
                        "error": str(e)
                    })
                return None

            self.messages_persisted += 1
            return message_id
        return None

    def _on_persist_done(self, task: asyncio.Task):
        self._pending_saves.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.persist_failures += 1
            if self.logger:
                self.logger.error("chat_handler.persist_task_error", {
                    "error": str(error),
                    "error_type": type(error).__name__
                })

    async def wait_for_pending_persistence(self):
        """Wait for every in-flight save to finish (shutdown and tests)."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        return {
            "messages_relayed": self.messages_relayed,
            "notifications_sent": self.notifications_sent,
            "messages_persisted": self.messages_persisted,
            "persist_failures": self.persist_failures,
            "pending_saves": len(self._pending_saves)
        }
