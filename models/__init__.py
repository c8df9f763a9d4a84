"""Data models for the Live Song Request Agent."""

from .chat import (
    ChatMessage,
    ClassificationResult,
    ClassificationSource,
    DeliveryFailure,
    MessageType,
    QueuedReply,
)
from .ledger import RequestEntry, RequestLedger, RankingSnapshot
from .stream import ConnectionState, StreamEvent, StreamEventKind
from .events import (
    WebSocketEvent,
    RankingUpdateEvent,
    ReplyEvent,
    ConnectionStatusEvent,
    ConnectionEvent,
    ErrorEvent,
)

__all__ = [
    "ChatMessage",
    "ClassificationResult",
    "ClassificationSource",
    "DeliveryFailure",
    "MessageType",
    "QueuedReply",
    "RequestEntry",
    "RequestLedger",
    "RankingSnapshot",
    "ConnectionState",
    "StreamEvent",
    "StreamEventKind",
    "WebSocketEvent",
    "RankingUpdateEvent",
    "ReplyEvent",
    "ConnectionStatusEvent",
    "ConnectionEvent",
    "ErrorEvent",
]
