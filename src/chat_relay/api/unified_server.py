"""
Unified Server
==============
Builds the FastAPI application and wires it to the live relay.

The REST API (session bootstrap, history, stats, health) is served by
uvicorn; the live WebSocket endpoint is started by the lifespan on its own
port in the same event loop, sharing one RelayState and one message store.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..core.logger import StructuredLogger
from ..core.time_manager import format_timestamp, utc_now
from ..data.message_store import create_message_store
from ..domain.interfaces.storage import IMessageStore
from ..infrastructure.config.config_loader import get_settings_from_working_directory
from ..infrastructure.config.settings import AppSettings
from .chat_routes import initialize_chat_dependencies, router as chat_router
from .websocket.relay_server import ChatRelayServer


def create_app(settings: Optional[AppSettings] = None,
               message_store: Optional[IMessageStore] = None,
               serve_transport: bool = True) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (loaded from the working directory if omitted)
        message_store: Store override, e.g. a prepared in-memory store in tests
        serve_transport: Bind the live WebSocket listener during lifespan startup
    """
    settings = settings or get_settings_from_working_directory()
    logger = StructuredLogger("UnifiedServer", settings.logging)

    store = message_store or create_message_store(settings.storage)
    relay_server = ChatRelayServer(
        message_store=store,
        relay_settings=settings.relay,
        heartbeat_settings=settings.heartbeat,
        storage_settings=settings.storage,
        logger=StructuredLogger("chat_relay.relay", settings.logging)
    )

    initialize_chat_dependencies(
        relay_state=relay_server.relay_state,
        message_store=store,
        relay_settings=settings.relay,
        stats_provider=relay_server.get_stats
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("unified_server.starting", {
            "storage_type": store.get_storage_type(),
            "relay_port": settings.relay.port,
            "serve_transport": serve_transport
        })
        app.state.start_time = time.time()

        await store.connect()
        await relay_server.start(serve_transport=serve_transport)

        try:
            yield
        finally:
            logger.info("unified_server.stopping")
            await relay_server.stop()
            await store.disconnect()
            logger.info("unified_server.stopped")

    app = FastAPI(title=settings.app_name, version=settings.version, debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.relay_server = relay_server
    app.state.message_store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health(_: Request):
        """Liveness probe"""
        return {
            "status": "healthy",
            "timestamp": format_timestamp(utc_now()),
            "uptime": time.time() - getattr(app.state, "start_time", time.time()),
            "relay_running": relay_server.is_running,
            "storage_type": store.get_storage_type(),
            "version": settings.version
        }

    return app
