"""
Message Store Implementations
=============================
Durable append-only persistence of chat messages.

- InMemoryMessageStore: process-local store for development and tests
- PostgresMessageStore: asyncpg connection pool, one row per message

Both return conversation history direction-agnostic and oldest-first,
applying `limit` to the newest messages.
"""

import asyncio
import itertools
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

import asyncpg

from ..core.exceptions import StoreUnavailable
from ..domain.interfaces.storage import IMessageStore
from ..domain.models.chat_message import ChatMessage
from ..infrastructure.config.settings import StorageSettings, StorageBackend

logger = logging.getLogger(__name__)


class InMemoryMessageStore(IMessageStore):
    """List-backed store. Contents are lost on restart."""

    def __init__(self):
        # (insertion sequence, message); sequence breaks timestamp ties
        self._messages: List[Tuple[int, ChatMessage]] = []
        self._sequence = itertools.count()

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def save(self, message: ChatMessage) -> str:
        message_id = uuid.uuid4().hex
        self._messages.append((next(self._sequence), message.with_id(message_id)))
        return message_id

    async def find_between(self,
                           user_a: str,
                           user_b: str,
                           limit: int,
                           before: Optional[datetime] = None) -> List[ChatMessage]:
        if limit <= 0:
            return []

        pair = {(user_a, user_b), (user_b, user_a)}
        matching = [
            (seq, message) for seq, message in self._messages
            if (message.sender, message.recipient) in pair
            and (before is None or message.timestamp < before)
        ]
        newest_first = sorted(matching, key=lambda item: (item[1].timestamp, item[0]), reverse=True)
        return [message for _, message in reversed(newest_first[:limit])]

    def __len__(self) -> int:
        return len(self._messages)

    def get_storage_type(self) -> str:
        return "memory"


class PostgresMessageStore(IMessageStore):
    """
    PostgreSQL-backed store using an asyncpg pool.

    The table is created on connect if missing. Every driver or network
    failure is reported as StoreUnavailable so callers handle one type.
    """

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS chat_messages (
            id BIGSERIAL PRIMARY KEY,
            sender TEXT NOT NULL,
            recipient TEXT,
            content TEXT NOT NULL,
            reply_to TEXT,
            ts TIMESTAMPTZ NOT NULL
        )
    """
    CREATE_INDEX_SQL = """
        CREATE INDEX IF NOT EXISTS chat_messages_pair_ts_idx
        ON chat_messages (sender, recipient, ts DESC)
    """
    INSERT_SQL = """
        INSERT INTO chat_messages (sender, recipient, content, reply_to, ts)
        VALUES ($1, $2, $3, $4, $5)
        RETURNING id
    """
    FIND_BETWEEN_SQL = """
        SELECT id, sender, recipient, content, reply_to, ts
        FROM chat_messages
        WHERE ((sender = $1 AND recipient = $2) OR (sender = $2 AND recipient = $1))
          AND ($3::timestamptz IS NULL OR ts < $3)
        ORDER BY ts DESC, id DESC
        LIMIT $4
    """

    _DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

    def __init__(self, settings: StorageSettings):
        self.settings = settings
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Initialize connection pool and schema"""
        if self.pool is not None:
            logger.warning("Connection pool already exists")
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.settings.dsn,
                min_size=self.settings.min_pool_size,
                max_size=self.settings.max_pool_size,
                command_timeout=self.settings.command_timeout,
                server_settings={'timezone': 'UTC'}
            )
            async with self.pool.acquire() as conn:
                await conn.execute(self.CREATE_TABLE_SQL)
                await conn.execute(self.CREATE_INDEX_SQL)
            logger.info(f"Connected to PostgreSQL at {self.settings.host}:{self.settings.port}")
        except self._DRIVER_ERRORS as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise StoreUnavailable("connect", e) from e

    async def disconnect(self) -> None:
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Disconnected from PostgreSQL")

    def _require_pool(self, operation: str) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreUnavailable(operation, RuntimeError("store not connected"))
        return self.pool

    async def save(self, message: ChatMessage) -> str:
        pool = self._require_pool("save")
        try:
            async with pool.acquire() as conn:
                row_id = await conn.fetchval(
                    self.INSERT_SQL,
                    message.sender,
                    message.recipient,
                    message.content,
                    message.reply_to,
                    message.timestamp,
                )
        except self._DRIVER_ERRORS as e:
            raise StoreUnavailable("save", e) from e
        return str(row_id)

    async def find_between(self,
                           user_a: str,
                           user_b: str,
                           limit: int,
                           before: Optional[datetime] = None) -> List[ChatMessage]:
        if limit <= 0:
            return []

        pool = self._require_pool("find_between")
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(self.FIND_BETWEEN_SQL, user_a, user_b, before, limit)
        except self._DRIVER_ERRORS as e:
            raise StoreUnavailable("find_between", e) from e

        # Query runs newest-first so LIMIT keeps the latest page
        return [
            ChatMessage(
                id=str(row['id']),
                sender=row['sender'],
                recipient=row['recipient'],
                content=row['content'],
                reply_to=row['reply_to'],
                timestamp=row['ts'],
            )
            for row in reversed(rows)
        ]

    def get_storage_type(self) -> str:
        return "postgres"


def create_message_store(settings: StorageSettings) -> IMessageStore:
    """Build the store selected by `storage.backend`."""
    if settings.backend == StorageBackend.POSTGRES:
        return PostgresMessageStore(settings)
    return InMemoryMessageStore()
