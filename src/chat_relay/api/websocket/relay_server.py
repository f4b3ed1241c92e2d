"""
Chat Relay Server
=================
Live connection endpoint: accepts WebSocket connections, decodes frames,
dispatches them to the handlers and tears connections down.

Served with the websockets library on its own port, inside the same event
loop as the REST API. The library's automatic keepalive is disabled; the
HeartbeatService issues the transport probes instead, so dead connections
go through relay cleanup rather than only being closed.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Set

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from ...core.exceptions import InvalidArgument, MalformedFrame, NotJoined
from ...core.logger import StructuredLogger
from ...domain.interfaces.storage import IMessageStore
from ...infrastructure.config.settings import HeartbeatSettings, RelaySettings, StorageSettings
from ..connection_manager import ConnectionManager
from .handlers.chat_handler import ChatMessageHandler
from .handlers.protocol_handler import ProtocolMessageHandler
from .lifecycle.relay_state import RelayState
from .protocol.frames import InboundFrame, JoinFrame, MessageFrame, PingFrame, RegisterFrame, parse_frame
from .services.heartbeat_service import HeartbeatService
from .utils.client_utils import ClientUtils
from .utils.error_handler import ErrorHandler


CLOSE_CODE_REASONS = {
    1000: "Normal closure",
    1001: "Going away",
    1002: "Protocol error",
    1003: "Unsupported data",
    1005: "No status received",
    1006: "Abnormal closure",
    1007: "Invalid frame payload data",
    1008: "Policy violation",
    1009: "Message too big",
    1011: "Internal error",
    1012: "Service restart",
    1013: "Try again later"
}


class ChatRelayServer:
    """
    Composition of the live relay.

    Owns the RelayState, ConnectionManager, handlers and HeartbeatService,
    and routes every teardown (client close, liveness timeout, backlog
    overflow, send failure) through close_connection().
    """

    def __init__(self,
                 message_store: IMessageStore,
                 relay_settings: Optional[RelaySettings] = None,
                 heartbeat_settings: Optional[HeartbeatSettings] = None,
                 storage_settings: Optional[StorageSettings] = None,
                 relay_state: Optional[RelayState] = None,
                 logger: Optional[StructuredLogger] = None):
        self.settings = relay_settings or RelaySettings()
        self.heartbeat_settings = heartbeat_settings or HeartbeatSettings()
        storage_settings = storage_settings or StorageSettings()
        self.logger = logger

        self.message_store = message_store
        self.relay_state = relay_state or RelayState(logger=logger)

        self.connection_manager = ConnectionManager(
            max_connections=self.settings.max_connections,
            max_send_backlog=self.settings.max_send_backlog
        )
        if logger:
            self.connection_manager.set_logger(logger)
        self.connection_manager.set_dead_connection_callback(self.close_connection)

        self.chat_handler = ChatMessageHandler(
            relay_state=self.relay_state,
            connection_manager=self.connection_manager,
            message_store=message_store,
            save_retries=storage_settings.save_retries,
            logger=logger
        )
        self.protocol_handler = ProtocolMessageHandler(logger=logger)
        self.error_handler = ErrorHandler(logger=logger)

        self.heartbeat_service = HeartbeatService(
            probe_interval_seconds=self.heartbeat_settings.probe_interval_seconds,
            logger=logger
        )
        self.heartbeat_service.set_callbacks(
            send_probe=self._send_probe,
            on_timeout=self._on_probe_timeout
        )

        self.server = None
        self.is_running = False
        self.start_time = datetime.now()
        self._closing_transports: Set[asyncio.Task] = set()

        # Statistics
        self.total_connections_handled = 0
        self.total_frames_processed = 0
        self.total_frames_dropped = 0

    async def start(self, serve_transport: bool = True):
        """
        Start the liveness monitor and, unless disabled, the WebSocket listener.

        Args:
            serve_transport: Bind the listening socket (False for in-process use)
        """
        if self.is_running:
            return

        if self.logger:
            self.logger.info("relay_server.starting", {
                "host": self.settings.host,
                "port": self.settings.port,
                "serve_transport": serve_transport
            })

        try:
            if serve_transport:
                self.server = await serve(
                    self.handle_client_connection,
                    self.settings.host,
                    self.settings.port,
                    ping_interval=None,  # probes come from HeartbeatService
                    close_timeout=5,
                    max_size=self.settings.max_frame_bytes,
                    compression=None
                )

            if self.heartbeat_settings.enabled:
                await self.heartbeat_service.start()

            self.is_running = True
            self.start_time = datetime.now()
            if self.logger:
                self.logger.info("relay_server.started", {
                    "host": self.settings.host,
                    "port": self.settings.port
                })
        except Exception as e:
            if self.logger:
                self.logger.error("relay_server.start_error", {
                    "error": str(e),
                    "error_type": type(e).__name__
                })
            raise

    async def stop(self):
        """Gracefully stop the relay and flush in-flight persistence."""
        if not self.is_running:
            return

        if self.logger:
            self.logger.info("relay_server.stopping")
        self.is_running = False

        await self.heartbeat_service.stop()

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        for client_id in await self.connection_manager.list_client_ids():
            await self.close_connection(client_id, "shutdown")
        await self.connection_manager.shutdown()
        await self.chat_handler.wait_for_pending_persistence()

        if self._closing_transports:
            await asyncio.gather(*list(self._closing_transports), return_exceptions=True)

        if self.logger:
            self.logger.info("relay_server.stopped", {
                "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
                "total_connections": self.total_connections_handled,
                "total_frames": self.total_frames_processed
            })

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_client_connection(self, websocket: Any):
        """Serve one WebSocket connection until it closes."""
        client_id = await self.open_connection(websocket)
        if not client_id:
            return

        close_code = 1000
        close_reason = CLOSE_CODE_REASONS[1000]
        try:
            async for raw in websocket:
                await self.process_frame(client_id, raw)
        except ConnectionClosed as e:
            received = getattr(e, 'rcvd', None)
            close_code = received.code if received else 1006
            close_reason = (received.reason if received else "") or CLOSE_CODE_REASONS.get(
                close_code, f"Unknown close code: {close_code}")
        except Exception as e:
            close_code = 1011
            close_reason = str(e)
            if self.logger:
                self.logger.error("relay_server.connection_error", {
                    "client_id": client_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
        finally:
            await self.connection_manager.log_connection_closed(
                client_id=client_id,
                close_code=close_code,
                close_reason=close_reason,
                initiated_by="client" if close_code in (1000, 1001) else "network"
            )
            await self.close_connection(client_id, "disconnected")

    async def open_connection(self, websocket: Any) -> Optional[str]:
        """
        Admit a connection and start monitoring it.

        Returns:
            client_id, or None when the server is at capacity
        """
        metadata = ClientUtils.build_connection_metadata(websocket, self.logger)
        connection = await self.connection_manager.add_connection(websocket, metadata)
        if connection is None:
            await websocket.close(1013, "Server at capacity")
            return None

        self.total_connections_handled += 1
        self.heartbeat_service.register_client(connection.client_id)

        if self.logger:
            self.logger.info("relay_client.connected", {
                "client_id": connection.client_id,
                "ip_address": metadata["ip_address"],
                "user_agent": metadata["user_agent"]
            })
        return connection.client_id

    async def close_connection(self, client_id: str, reason: str = "disconnected"):
        """
        Single teardown path for a connection. Idempotent.

        Removes the connection from every session and, where it is the
        current binding, from the socket registry. Connections torn down for
        any reason other than a client close also have their transport closed.
        """
        self.heartbeat_service.unregister_client(client_id)
        eviction = await self.relay_state.evict(client_id)
        connection = await self.connection_manager.remove_connection(client_id, reason)

        if connection and reason != "disconnected":
            self._close_transport(connection.websocket, reason)

        if connection and self.logger:
            self.logger.info("relay_client.cleaned_up", {
                "client_id": client_id,
                "reason": reason,
                "sessions": list(eviction.sessions),
                "unregistered_users": list(eviction.unregistered_users)
            })

    def _close_transport(self, websocket: Any, reason: str):
        # Closing a dead peer can take up to close_timeout; keep it off the caller's path
        async def _close():
            try:
                await websocket.close(1011 if reason != "shutdown" else 1001, reason[:120])
            except Exception as e:
                if self.logger:
                    self.logger.debug("relay_server.transport_close_error", {
                        "reason": reason,
                        "error": str(e)
                    })

        task = asyncio.create_task(_close())
        self._closing_transports.add(task)
        task.add_done_callback(self._closing_transports.discard)

    async def _send_probe(self, client_id: str) -> Optional[asyncio.Future]:
        connection = await self.connection_manager.get_connection(client_id)
        if not connection or not connection.is_open:
            return None
        try:
            return await connection.websocket.ping()
        except ConnectionClosed:
            return None

    async def _on_probe_timeout(self, client_id: str):
        await self.close_connection(client_id, "liveness_timeout")

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    async def process_frame(self, client_id: str, raw: Any) -> Optional[Dict[str, Any]]:
        """
        Decode and handle one inbound frame.

        Every failure is handled here; nothing propagates to the connection
        loop. Returns the direct reply that was queued, if any.
        """
        self.total_frames_processed += 1
        await self.connection_manager.record_message_received(client_id)

        reply: Optional[Dict[str, Any]] = None
        dropped = True
        try:
            frame = parse_frame(raw)
        except MalformedFrame as e:
            reply = self.error_handler.invalid_json(client_id, e.reason)
        except InvalidArgument as e:
            reply = self.error_handler.invalid_frame(client_id, e.field, e.reason)
        else:
            try:
                reply = await self._dispatch(client_id, frame)
                dropped = False
            except NotJoined:
                reply = self.error_handler.not_joined(client_id)
            except InvalidArgument as e:
                reply = self.error_handler.invalid_frame(client_id, e.field, e.reason)
            except Exception as e:
                if self.logger:
                    self.logger.error("relay_server.frame_handler_error", {
                        "client_id": client_id,
                        "frame_type": getattr(frame, 'type', None),
                        "error": str(e),
                        "error_type": type(e).__name__
                    }, exc_info=True)

        if dropped:
            self.total_frames_dropped += 1
        if reply is None:
            return None

        await self.connection_manager.send_to_client(client_id, reply)
        return reply

    async def _dispatch(self, client_id: str, frame: InboundFrame) -> Optional[Dict[str, Any]]:
        match frame:
            case RegisterFrame():
                return await self.chat_handler.handle_register(client_id, frame)
            case JoinFrame():
                return await self.chat_handler.handle_join(client_id, frame)
            case MessageFrame():
                await self.chat_handler.handle_message(client_id, frame)
                return None
            case PingFrame():
                return await self.protocol_handler.handle_ping(client_id, frame)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get relay statistics"""
        uptime = (datetime.now() - self.start_time).total_seconds()
        return {
            "server": {
                "host": self.settings.host,
                "port": self.settings.port,
                "uptime_seconds": uptime,
                "is_running": self.is_running
            },
            "connections": self.connection_manager.get_connection_stats_snapshot(),
            "state": self.relay_state.get_stats(),
            "messages": self.chat_handler.get_stats(),
            "heartbeat": self.heartbeat_service.get_summary(),
            "performance": {
                "total_frames_processed": self.total_frames_processed,
                "total_frames_dropped": self.total_frames_dropped,
                "total_connections_handled": self.total_connections_handled,
                "frames_per_second": self.total_frames_processed / max(uptime, 1)
            }
        }
