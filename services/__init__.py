"""Services module for the TikTok song request agent."""

from .audit_log import ResponseAuditLog
from .chat_pipeline import ChatPipeline
from .connection_manager import ConnectionManager, build_connection, open_connection
from .message_classifier import MessageClassifier, OllamaClassificationClient
from .ollama_client import OllamaService
from .response_generator import ResponseGenerator
from .response_orchestrator import ResponseOrchestrator, should_respond
from .senders import DirectSender, ScrapingSender, Sender, create_sender
from .tiktok_transport import ChatTransport, TikTokLiveTransport

__all__ = [
    "ResponseAuditLog",
    "ChatPipeline",
    "ConnectionManager",
    "build_connection",
    "open_connection",
    "MessageClassifier",
    "OllamaClassificationClient",
    "OllamaService",
    "ResponseGenerator",
    "ResponseOrchestrator",
    "should_respond",
    "DirectSender",
    "ScrapingSender",
    "Sender",
    "create_sender",
    "ChatTransport",
    "TikTokLiveTransport",
]
