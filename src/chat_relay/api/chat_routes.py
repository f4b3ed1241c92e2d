"""
Chat API Routes
===============

REST endpoints consumed by clients alongside the live connection.

Endpoints:
- GET  /api/chat           - Route status
- POST /api/chat/session   - Create or get the session for a pair of users
- GET  /api/chat/messages  - Conversation history between two users
- GET  /api/chat/stats     - Relay statistics
"""

from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..core.exceptions import InvalidArgument, StoreUnavailable
from ..core.logger import get_logger
from ..core.time_manager import format_timestamp, parse_timestamp, utc_now
from ..domain.interfaces.storage import IMessageStore
from ..infrastructure.config.settings import RelaySettings
from .websocket.lifecycle.relay_state import RelayState

logger = get_logger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])

API_VERSION = "1.0.0"
BOOTSTRAP_ATTEMPTS = 2

# Dependency injection - set by create_app()
_relay_state: Optional[RelayState] = None
_message_store: Optional[IMessageStore] = None
_relay_settings: Optional[RelaySettings] = None
_stats_provider: Optional[Callable[[], Dict[str, Any]]] = None


class SessionBootstrapRequest(BaseModel):
    """Body of POST /api/chat/session. Fields are checked by RelayState so bad input maps to 400."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id_1: Optional[Any] = Field(default=None, alias="userId1")
    user_id_2: Optional[Any] = Field(default=None, alias="userId2")


def initialize_chat_dependencies(relay_state: RelayState,
                                 message_store: IMessageStore,
                                 relay_settings: Optional[RelaySettings] = None,
                                 stats_provider: Optional[Callable[[], Dict[str, Any]]] = None):
    """
    Initialize dependencies for chat routes.
    Called from create_app().

    Args:
        relay_state: Shared relay state (sessions and registry)
        message_store: Store queried for history
        relay_settings: History limit configuration
        stats_provider: Callable returning relay statistics
    """
    global _relay_state, _message_store, _relay_settings, _stats_provider
    _relay_state = relay_state
    _message_store = message_store
    _relay_settings = relay_settings or RelaySettings()
    _stats_provider = stats_provider
    logger.info("chat_routes.dependencies_initialized", {
        "storage_type": message_store.get_storage_type()
    })


def _ensure_dependencies():
    """Verify dependencies are initialized."""
    if _relay_state is None or _message_store is None:
        raise RuntimeError(
            "Chat routes dependencies not initialized. "
            "Call initialize_chat_dependencies() during app startup."
        )
    return _relay_state, _message_store, _relay_settings


def _error(message: str, status: int) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


@router.get("")
async def chat_status() -> Dict[str, Any]:
    """Route status probe."""
    return {
        "message": "Chat route ready",
        "version": API_VERSION,
        "timestamp": format_timestamp(utc_now())
    }


@router.post("/session")
async def create_or_get_session(body: Optional[SessionBootstrapRequest] = Body(None)):
    """
    Create or get the session for a pair of users.

    Idempotent: the same pair, in either order, always yields the same id.

    Returns:
        {"sessionId": "..."}

    Errors:
        400 {"error": "..."} - missing, blank or equal user ids
        409 {"error": "Session bootstrap failed, retry"} - internal failure after one retry
    """
    relay_state, _, _ = _ensure_dependencies()
    body = body or SessionBootstrapRequest()

    last_error: Optional[Exception] = None
    for attempt in range(1, BOOTSTRAP_ATTEMPTS + 1):
        try:
            session_id, created = await relay_state.create_or_get_session(body.user_id_1, body.user_id_2)
        except InvalidArgument as e:
            return _error(e.message, 400)
        except Exception as e:
            last_error = e
            logger.warning("chat_routes.session_bootstrap_retry", {
                "attempt": attempt,
                "error": str(e),
                "error_type": type(e).__name__
            })
            continue

        logger.info("chat_routes.session_bootstrapped", {
            "session_id": session_id,
            "created": created
        })
        return {"sessionId": session_id}

    logger.error("chat_routes.session_bootstrap_failed", {
        "attempts": BOOTSTRAP_ATTEMPTS,
        "error": str(last_error),
        "error_type": type(last_error).__name__
    })
    return _error("Session bootstrap failed, retry", 409)


@router.get("/messages")
async def get_messages(
    user1: Optional[str] = Query(None, description="First participant"),
    user2: Optional[str] = Query(None, description="Second participant"),
    limit: Optional[str] = Query(None, description="Maximum messages to return (default 30)"),
    before: Optional[str] = Query(None, description="Exclusive ISO-8601 upper bound on timestamp")
):
    """
    Conversation history between two users, in either direction.

    The newest `limit` messages older than `before` are returned oldest-first.

    Returns:
        [
            {
                "id": "...",
                "sender": "alice",
                "recipient": "bob",
                "content": "hello",
                "replyTo": null,
                "timestamp": "2026-10-19T12:00:00.000Z"
            }
        ]
    """
    _, message_store, settings = _ensure_dependencies()

    if not user1 or not user2:
        return _error("Both user1 and user2 are required", 400)

    try:
        effective_limit = settings.default_history_limit if limit is None else int(limit)
    except ValueError:
        return _error("Invalid 'limit' value", 400)
    effective_limit = max(1, min(effective_limit, settings.max_history_limit))

    try:
        before_ts = parse_timestamp(before) if before else None
    except ValueError:
        return _error("Invalid 'before' timestamp", 400)

    try:
        messages = await message_store.find_between(user1, user2, effective_limit, before_ts)
    except StoreUnavailable as e:
        logger.error("chat_routes.history_fetch_failed", {
            "user1": user1,
            "user2": user2,
            "error": str(e)
        })
        return _error("Failed to fetch messages", 503)

    return [message.to_dict() for message in messages]


@router.get("/stats")
async def get_stats() -> Dict[str, Any]:
    """Relay statistics (connections, sessions, relay counters)."""
    relay_state, message_store, _ = _ensure_dependencies()
    if _stats_provider is not None:
        stats = _stats_provider()
    else:
        stats = {"state": relay_state.get_stats()}
    stats["storage_type"] = message_store.get_storage_type()
    return stats
