"""
Live Protocol Frames
====================
Inbound frames are a tagged union on the `type` field, validated with
pydantic and dispatched by pattern matching. Outbound frames are plain dicts
built by the helpers below.

Malformed-input policy:
- not JSON at all: MalformedFrame, answered with {"error": "Invalid JSON"}
- JSON but not a known, well-formed frame: InvalidArgument, dropped silently
"""

import json
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ....core.exceptions import InvalidArgument, MalformedFrame
from ....core.time_manager import format_timestamp


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class RegisterFrame(_Frame):
    type: Literal["register"]
    user_id: str = Field(alias="userId", min_length=1)


class JoinFrame(_Frame):
    type: Literal["join"]
    user_id: str = Field(alias="userId", min_length=1)
    session_id: str = Field(alias="sessionId", min_length=1)
    other_user_id: Optional[str] = Field(default=None, alias="otherUserId")


class MessageFrame(_Frame):
    type: Literal["message"]
    content: str = Field(min_length=1)
    reply_to: Optional[str] = Field(default=None, alias="replyTo")


class PingFrame(_Frame):
    type: Literal["ping"]


InboundFrame = Annotated[
    Union[RegisterFrame, JoinFrame, MessageFrame, PingFrame],
    Field(discriminator="type")
]

_inbound_adapter = TypeAdapter(InboundFrame)


def parse_frame(raw: Union[str, bytes]) -> InboundFrame:
    """
    Decode one inbound frame.

    Raises:
        MalformedFrame: payload is not valid JSON
        InvalidArgument: JSON that is not a recognised, well-formed frame
    """
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedFrame(str(e)) from e

    if not isinstance(data, dict):
        raise InvalidArgument("frame", "not an object")

    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "frame"
        raise InvalidArgument(location, first.get("msg", "invalid")) from e


def registered_frame(user_id: str) -> Dict[str, Any]:
    return {"type": "registered", "userId": user_id}


def joined_frame(session_id: str) -> Dict[str, Any]:
    return {"type": "joined", "sessionId": session_id}


def chat_frame(kind: Literal["message", "notification"],
               sender: str,
               content: str,
               reply_to: Optional[str],
               timestamp: datetime) -> Dict[str, Any]:
    """Fan-out and notification frames share one shape and differ by `type`."""
    return {
        "type": kind,
        "from": sender,
        "content": content,
        "replyTo": reply_to,
        "timestamp": format_timestamp(timestamp)
    }


def pong_frame(timestamp: datetime) -> Dict[str, Any]:
    return {"type": "pong", "timestamp": format_timestamp(timestamp)}
