"""
WebSocket event models for real-time dashboard updates.
"""

from dataclasses import dataclass, field, asdict
from typing import List, Optional, Any
import json


@dataclass
class WebSocketEvent:
    """Base class for WebSocket events."""

    event_type: str

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(asdict(self), ensure_ascii=False)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class RankingUpdateEvent(WebSocketEvent):
    """
    Sent when the request ranking changes and by the periodic notifier.
    Used by the dashboard for the "top requests" list.
    """

    event_type: str = "ranking_update"
    top: List[dict] = field(default_factory=list)
    total_songs: int = 0

    @classmethod
    def from_ledger(cls, ledger: Any, limit: int = 10) -> "RankingUpdateEvent":
        """Create event from a RequestLedger."""
        data = ledger.to_dict(limit)
        return cls(top=data["top"], total_songs=data["total_songs"])


@dataclass
class ReplyEvent(WebSocketEvent):
    """
    Sent after the bot generated a reply.
    """

    event_type: str = "reply"
    user: str = ""
    user_message: str = ""
    bot_response: str = ""
    delivered: bool = False
    failure: Optional[str] = None


@dataclass
class ConnectionStatusEvent(WebSocketEvent):
    """
    Sent when the live stream connection changes state.
    """

    event_type: str = "connection_status"
    state: str = "disconnected"
    username: str = ""
    room_id: Optional[str] = None
    title: Optional[str] = None
    viewer_count: Optional[int] = None


@dataclass
class ErrorEvent(WebSocketEvent):
    """
    Sent when an error occurs.
    Used for debugging and user feedback.
    """

    event_type: str = "error"
    message: str = ""
    code: str = ""
    details: Optional[str] = None


@dataclass
class ConnectionEvent(WebSocketEvent):
    """
    Sent when a client connects.
    Provides initial state.
    """

    event_type: str = "connected"
    connection_state: str = "disconnected"
    total_songs: int = 0
    reply_queue_length: int = 0
    server_version: str = "1.0.0"
