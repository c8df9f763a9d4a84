"""API module for the TikTok song request agent."""

from .websocket_manager import WebSocketManager
from .routes import create_router

__all__ = [
    "WebSocketManager",
    "create_router",
]
