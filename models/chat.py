"""
Chat message, classification and reply models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class ChatMessage:
    """A single chat comment received from the broadcast."""

    sender_id: str
    sender_handle: str
    text: str
    received_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "sender_id": self.sender_id,
            "sender_handle": self.sender_handle,
            "text": self.text,
            "received_at": self.received_at.isoformat(),
        }


class MessageType(str, Enum):
    """Fixed classification schema for chat messages."""

    REQUEST = "request"
    VOTE = "vote"
    RATING = "rating"
    NORMAL = "normal"
    SPAM = "spam"


class ClassificationSource(str, Enum):
    """Which tier of the classifier produced a result."""

    RULES = "rules"
    LLM = "llm"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ClassificationResult:
    """
    Outcome of classifying one message.
    `song` is only set for requests.
    """

    type: MessageType = MessageType.NORMAL
    song: Optional[str] = None
    source: ClassificationSource = ClassificationSource.SKIPPED

    @property
    def is_request(self) -> bool:
        """True when this result carries a usable song."""
        return self.type is MessageType.REQUEST and bool(self.song)

    @classmethod
    def neutral(cls, source: ClassificationSource = ClassificationSource.SKIPPED) -> "ClassificationResult":
        """The default result used whenever classification cannot complete."""
        return cls(type=MessageType.NORMAL, song=None, source=source)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type.value,
            "song": self.song,
            "source": self.source.value,
        }


@dataclass
class QueuedReply:
    """A reply waiting in the response queue."""

    message: ChatMessage
    context_songs: List[str] = field(default_factory=list)
    allow_delivery: bool = True
    preset_text: Optional[str] = None  # confirmations skip generation


class DeliveryFailure(str, Enum):
    """Loggable reasons a reply did not reach the chat."""

    EMPTY_MESSAGE = "empty_message"
    NOT_CONNECTED = "not_connected"
    MISSING_CREDENTIALS = "missing_credentials"
    AUTHORIZATION_REQUIRED = "authorization_required"
    TRANSPORT_ERROR = "transport_error"
    SELECTOR_UNAVAILABLE = "selector_unavailable"
    NOT_CONFIRMED = "not_confirmed"
