"""
Connection state and inbound stream event models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ConnectionState(str, Enum):
    """Lifecycle of the live stream connection. CLOSING is terminal."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class StreamEventKind(str, Enum):
    """Closed set of events a chat transport can emit."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    CHAT = "chat"


@dataclass(frozen=True)
class StreamEvent:
    """
    One event from the chat transport.

    Payload shapes:
        CONNECTED: room metadata (room_id, title, viewer_count, ...)
        DISCONNECTED: {} or {"reason": str}
        ERROR: {"error": str}
        CHAT: {"sender_id", "sender_handle", "text"}
    """

    kind: StreamEventKind
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def connected(cls, room_info: Optional[Dict[str, Any]] = None) -> "StreamEvent":
        return cls(StreamEventKind.CONNECTED, dict(room_info or {}))

    @classmethod
    def disconnected(cls, reason: str = "") -> "StreamEvent":
        return cls(StreamEventKind.DISCONNECTED, {"reason": reason} if reason else {})

    @classmethod
    def error(cls, error: Any) -> "StreamEvent":
        return cls(StreamEventKind.ERROR, {"error": str(error)})

    @classmethod
    def chat(cls, sender_id: str, sender_handle: str, text: str) -> "StreamEvent":
        return cls(
            StreamEventKind.CHAT,
            {"sender_id": sender_id, "sender_handle": sender_handle, "text": text},
        )
