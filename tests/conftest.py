"""
Shared fixtures for relay tests.

FakeWebSocket stands in for a websockets ServerConnection: it records sent
frames, answers transport pings through pong-waiter futures and can replay
a scripted list of inbound frames.
"""

import asyncio
import json

import pytest

from chat_relay.api.websocket.relay_server import ChatRelayServer
from chat_relay.data.message_store import InMemoryMessageStore
from chat_relay.infrastructure.config.settings import HeartbeatSettings, RelaySettings, StorageSettings


class FakeWebSocket:
    """Minimal transport double"""

    def __init__(self, remote_address=("127.0.0.1", 50000), incoming=(), auto_pong=True):
        self.remote_address = remote_address
        self.request_headers = {"User-Agent": "pytest-client"}
        self.sent = []
        self.pings = []
        self.closed = False
        self.close_code = None
        self.auto_pong = auto_pong
        self.send_error = None
        self.send_gate = None
        self._incoming = list(incoming)

    async def send(self, data):
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(data))

    async def ping(self):
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.001)
        self.pings.append(waiter)
        return waiter

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def __aiter__(self):
        return self._replay()

    async def _replay(self):
        for frame in self._incoming:
            yield frame if isinstance(frame, (str, bytes)) else json.dumps(frame)

    def frames_of_type(self, frame_type):
        return [frame for frame in self.sent if frame.get("type") == frame_type]


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def relay_server(message_store):
    """Relay without a listening socket or background sweep"""
    return ChatRelayServer(
        message_store=message_store,
        relay_settings=RelaySettings(max_send_backlog=16),
        heartbeat_settings=HeartbeatSettings(enabled=False, probe_interval_seconds=30.0),
        storage_settings=StorageSettings(save_retries=1)
    )


@pytest.fixture
def connect(relay_server):
    """Open a fake connection on the relay; returns (client_id, websocket)"""
    async def _connect(remote_address=("127.0.0.1", 50000), auto_pong=True):
        websocket = FakeWebSocket(remote_address=remote_address, auto_pong=auto_pong)
        client_id = await relay_server.open_connection(websocket)
        return client_id, websocket
    return _connect


@pytest.fixture
def send(relay_server):
    """Feed one frame (dict or raw text) into the relay for a client"""
    async def _send(client_id, frame):
        raw = frame if isinstance(frame, (str, bytes)) else json.dumps(frame)
        return await relay_server.process_frame(client_id, raw)
    return _send


@pytest.fixture
def settle(relay_server):
    """Flush outbound queues and background persistence"""
    async def _settle():
        await relay_server.chat_handler.wait_for_pending_persistence()
        await relay_server.connection_manager.drain_all()
    return _settle
