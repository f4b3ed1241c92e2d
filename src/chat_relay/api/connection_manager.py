"""
Connection Manager
==================
Tracks live relay connections and owns their outbound path.

Every connection gets a bounded outbound queue drained by its own writer
task, so fan-out never waits on a slow consumer. A connection whose queue
overflows, or whose transport fails on send, is reported as dead through the
dead-connection callback and goes through the same cleanup path as a
liveness failure.
"""

import asyncio
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import psutil
from websockets.exceptions import ConnectionClosed

from ..core.exceptions import DeadConnection
from ..core.logger import StructuredLogger


DeadConnectionCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class ClientConnection:
    """Live connection state with a bounded outbound backlog"""

    client_id: str
    websocket: Any  # websockets ServerConnection or a test double
    connected_at: datetime
    ip_address: str
    user_agent: str
    max_backlog: int = 256

    # Tags set once a join/register succeeds (informational; RelayState is authoritative)
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    # Performance tracking
    messages_sent: int = 0
    messages_received: int = 0
    bandwidth_used: int = 0
    last_activity: float = field(default_factory=time.time)
    message_timestamps: deque = field(default_factory=lambda: deque(maxlen=1000))

    is_open: bool = True
    outbox: asyncio.Queue = field(init=False)
    writer_task: Optional[asyncio.Task] = field(default=None, init=False)

    def __post_init__(self):
        self.outbox = asyncio.Queue(maxsize=self.max_backlog)

    def enqueue(self, frame: Dict[str, Any]) -> int:
        """
        Queue a frame for delivery without waiting on the transport.

        Returns:
            Serialized size in bytes

        Raises:
            DeadConnection: connection closed or backlog full
        """
        if not self.is_open:
            raise DeadConnection(self.client_id, "connection_closed")
        data = json.dumps(frame)
        try:
            self.outbox.put_nowait(data)
        except asyncio.QueueFull:
            raise DeadConnection(self.client_id, "send_backlog_overflow")
        return len(data)

    def record_message_sent(self, size_bytes: int):
        """Record outbound message for stats"""
        self.messages_sent += 1
        self.bandwidth_used += size_bytes

    def record_message_received(self):
        """Record inbound message for stats"""
        now = time.time()
        self.last_activity = now
        self.message_timestamps.append(now)
        self.messages_received += 1

    def get_connection_age_seconds(self) -> float:
        """Get connection age in seconds"""
        return time.time() - self.connected_at.timestamp()

    def get_messages_per_minute(self) -> float:
        """Calculate inbound messages per minute"""
        cutoff = time.time() - 60
        while self.message_timestamps and self.message_timestamps[0] < cutoff:
            self.message_timestamps.popleft()
        return len(self.message_timestamps)

    def discard_backlog(self):
        """Drop queued frames, keeping the queue's join() accounting balanced."""
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.outbox.task_done()

    async def drain(self):
        """Wait until every queued frame has been written or discarded."""
        await self.outbox.join()


class ConnectionManager:
    """
    Manages all live relay connections.

    Features:
    - Connection limit enforcement
    - Per-connection writer tasks with bounded backlogs
    - Dead connection reporting (overflow, transport failure)
    - Connection statistics for monitoring
    """

    def __init__(self,
                 max_connections: int = 1000,
                 max_send_backlog: int = 256):
        """
        Initialize ConnectionManager.

        Args:
            max_connections: Maximum concurrent connections
            max_send_backlog: Outbound frames queued per connection before it is dead
        """
        self.max_connections = max_connections
        self.max_send_backlog = max_send_backlog

        self._connections: Dict[str, ClientConnection] = {}
        self._connection_lock = asyncio.Lock()

        self._on_dead_connection: Optional[DeadConnectionCallback] = None
        self._background_tasks: Set[asyncio.Task] = set()

        # Performance metrics
        self.total_connections_accepted = 0
        self.total_connections_rejected = 0
        self.total_connections_dropped = 0
        self.peak_concurrent_connections = 0

        self.logger: Optional[StructuredLogger] = None

    def set_logger(self, logger: StructuredLogger):
        """Set logger instance"""
        self.logger = logger

    def set_dead_connection_callback(self, callback: DeadConnectionCallback):
        """Async callback(client_id, reason) invoked when a connection is found dead"""
        self._on_dead_connection = callback

    async def add_connection(self, websocket: Any, metadata: Dict[str, Any]) -> Optional[ClientConnection]:
        """
        Add new client connection and start its writer.

        Args:
            websocket: Transport connection object
            metadata: Connection metadata (IP, user agent)

        Returns:
            ClientConnection if accepted, None if the connection limit is reached
        """
        async with self._connection_lock:
            if len(self._connections) >= self.max_connections:
                self.total_connections_rejected += 1
                if self.logger:
                    self.logger.warning("connection_manager.connection_limit_reached", {
                        "current_connections": len(self._connections),
                        "max_connections": self.max_connections,
                        "rejected_ip": metadata.get("ip_address")
                    })
                return None

            client_id = str(uuid.uuid4())
            connection = ClientConnection(
                client_id=client_id,
                websocket=websocket,
                connected_at=datetime.now(),
                ip_address=metadata.get("ip_address", "unknown"),
                user_agent=metadata.get("user_agent", "unknown"),
                max_backlog=self.max_send_backlog
            )
            self._connections[client_id] = connection
            self.total_connections_accepted += 1

            current_count = len(self._connections)
            if current_count > self.peak_concurrent_connections:
                self.peak_concurrent_connections = current_count

        connection.writer_task = asyncio.create_task(self._writer_loop(connection))

        if self.logger:
            self.logger.info("connection_manager.connection_added", {
                "client_id": client_id,
                "ip_address": connection.ip_address,
                "total_connections": current_count
            })

        return connection

    async def remove_connection(self, client_id: str, reason: str = "normal") -> Optional[ClientConnection]:
        """
        Forget a connection and stop its writer. Does not close the transport.

        Args:
            client_id: Client ID to remove
            reason: Reason for removal (normal, liveness_timeout, send_backlog_overflow, ...)

        Returns:
            The removed connection, or None if it was already gone
        """
        async with self._connection_lock:
            connection = self._connections.pop(client_id, None)
            if not connection:
                return None
            self.total_connections_dropped += 1
            remaining = len(self._connections)

        connection.is_open = False
        writer = connection.writer_task
        if writer and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()
        connection.discard_backlog()

        if self.logger:
            self.logger.info("connection_manager.connection_removed", {
                "client_id": client_id,
                "user_id": connection.user_id,
                "reason": reason,
                "duration_seconds": connection.get_connection_age_seconds(),
                "messages_sent": connection.messages_sent,
                "messages_received": connection.messages_received,
                "bandwidth_used": connection.bandwidth_used,
                "remaining_connections": remaining
            })

        return connection

    async def get_connection(self, client_id: str) -> Optional[ClientConnection]:
        """Get client connection by ID"""
        async with self._connection_lock:
            return self._connections.get(client_id)

    async def list_client_ids(self) -> List[str]:
        async with self._connection_lock:
            return list(self._connections.keys())

    async def is_live(self, client_id: str) -> bool:
        connection = await self.get_connection(client_id)
        return connection is not None and connection.is_open

    async def record_message_received(self, client_id: str):
        connection = await self.get_connection(client_id)
        if connection:
            connection.record_message_received()

    async def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        """
        Queue a message for a specific client.

        Never waits on the transport. A full backlog marks the connection
        dead and triggers cleanup.

        Returns:
            True if the message was queued, False otherwise
        """
        connection = await self.get_connection(client_id)
        if not connection:
            return False

        try:
            size = connection.enqueue(message)
        except DeadConnection as e:
            if self.logger:
                self.logger.warning("connection_manager.send_rejected", {
                    "client_id": client_id,
                    "reason": e.reason,
                    "backlog": connection.outbox.qsize()
                })
            await self._report_dead(client_id, e.reason)
            return False

        connection.record_message_sent(size)
        return True

    async def broadcast(self, client_ids: List[str], message: Dict[str, Any]) -> int:
        """
        Queue the same message for several clients.

        Returns:
            Number of clients the message was queued for
        """
        sent_count = 0
        for client_id in client_ids:
            if await self.send_to_client(client_id, message):
                sent_count += 1

        if self.logger:
            self.logger.debug("connection_manager.broadcast_completed", {
                "message_type": message.get("type"),
                "targets": len(client_ids),
                "messages_queued": sent_count
            })
        return sent_count

    async def drain_all(self):
        """Wait for every open connection's backlog to be written."""
        async with self._connection_lock:
            connections = list(self._connections.values())
        await asyncio.gather(*(connection.drain() for connection in connections))

    async def _writer_loop(self, connection: ClientConnection):
        """Drain one connection's backlog onto its transport."""
        while True:
            data = await connection.outbox.get()
            try:
                await connection.websocket.send(data)
            except asyncio.CancelledError:
                connection.outbox.task_done()
                raise
            except ConnectionClosed as e:
                connection.outbox.task_done()
                if self.logger:
                    self.logger.debug("connection_manager.send_skipped_connection_closed", {
                        "client_id": connection.client_id,
                        "close_code": getattr(getattr(e, 'rcvd', None), 'code', None)
                    })
                self._schedule_dead_report(connection, "connection_closed")
                return
            except Exception as e:
                connection.outbox.task_done()
                if self.logger:
                    self.logger.error("connection_manager.send_failed", {
                        "client_id": connection.client_id,
                        "error": str(e),
                        "error_type": type(e).__name__
                    })
                self._schedule_dead_report(connection, "send_failed")
                return
            connection.outbox.task_done()

    def _schedule_dead_report(self, connection: ClientConnection, reason: str):
        # Runs from inside the writer task; cleanup cancels writers, so hand it off
        connection.is_open = False
        connection.discard_backlog()
        task = asyncio.create_task(self._report_dead(connection.client_id, reason))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _report_dead(self, client_id: str, reason: str):
        if self._on_dead_connection is None:
            await self.remove_connection(client_id, reason)
            return
        try:
            await self._on_dead_connection(client_id, reason)
        except Exception as e:
            if self.logger:
                self.logger.error("connection_manager.dead_connection_callback_error", {
                    "client_id": client_id,
                    "reason": reason,
                    "error": str(e)
                })

    def get_connection_stats_snapshot(self) -> Dict[str, Any]:
        """Get connection statistics (snapshot, not taken under the lock)"""
        connections_snapshot = list(self._connections.values())
        if connections_snapshot:
            avg_age = sum(conn.get_connection_age_seconds() for conn in connections_snapshot) / len(connections_snapshot)
        else:
            avg_age = 0.0

        return {
            "current_connections": len(connections_snapshot),
            "max_connections": self.max_connections,
            "peak_concurrent_connections": self.peak_concurrent_connections,
            "total_connections_accepted": self.total_connections_accepted,
            "total_connections_rejected": self.total_connections_rejected,
            "total_connections_dropped": self.total_connections_dropped,
            "total_bandwidth_used": sum(conn.bandwidth_used for conn in connections_snapshot),
            "total_messages_sent": sum(conn.messages_sent for conn in connections_snapshot),
            "total_messages_received": sum(conn.messages_received for conn in connections_snapshot),
            "queued_frames": sum(conn.outbox.qsize() for conn in connections_snapshot),
            "average_connection_age_seconds": avg_age,
            "memory_usage_mb": psutil.Process().memory_info().rss / 1024 / 1024
        }

    async def shutdown(self):
        """Forget all connections and stop their writers"""
        for client_id in await self.list_client_ids():
            await self.remove_connection(client_id, "shutdown")

        for task in list(self._background_tasks):
            task.cancel()

        if self.logger:
            self.logger.info("connection_manager.shutdown_completed", {
                "total_connections_handled": self.total_connections_accepted
            })

    async def log_connection_closed(
        self,
        client_id: str,
        close_code: Optional[int],
        close_reason: str,
        initiated_by: str = "unknown"
    ) -> None:
        """
        Log diagnostic information when a connection closes.

        Close codes other than 1000 (normal) and 1001 (going away) are
        logged at WARNING level.
        """
        if not self.logger:
            return

        connection = self._connections.get(client_id)
        log_data = {
            "client_id": client_id,
            "close_code": close_code,
            "close_reason": close_reason,
            "initiated_by": initiated_by,
            "duration_seconds": connection.get_connection_age_seconds() if connection else 0.0,
            "messages_sent": connection.messages_sent if connection else 0,
            "messages_received": connection.messages_received if connection else 0,
            "last_activity_age_seconds": (time.time() - connection.last_activity) if connection else 0.0
        }

        if close_code in (1000, 1001):
            self.logger.info("relay.connection_closed", log_data)
        else:
            self.logger.warning("relay.connection_closed", log_data)
