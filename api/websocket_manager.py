"""
WebSocket connection manager for real-time dashboard updates.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from fastapi import WebSocket

from models.events import (
    WebSocketEvent,
    ConnectionEvent,
    ConnectionStatusEvent,
    ErrorEvent,
    RankingUpdateEvent,
    ReplyEvent,
)

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Manages WebSocket connections and broadcasts events to all clients.
    Used for the live ranking and reply feed on the dashboard.
    """

    def __init__(self):
        """Initialize the WebSocket manager."""
        self.active_connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection to accept
        """
        await websocket.accept()

        async with self._lock:
            self.active_connections.append(websocket)

        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """
        Remove a WebSocket connection.

        Args:
            websocket: The WebSocket connection to remove
        """
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)

        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def send_personal(self, websocket: WebSocket, event: WebSocketEvent) -> bool:
        """
        Send an event to a specific client.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await websocket.send_text(event.to_json())
            return True
        except Exception as e:
            logger.error(f"Failed to send to client: {e}")
            return False

    async def broadcast(self, event: WebSocketEvent) -> int:
        """
        Send an event to all connected clients.

        Args:
            event: Event to broadcast

        Returns:
            Number of clients that received the message
        """
        if not self.active_connections:
            return 0

        message = event.to_json()
        disconnected: List[WebSocket] = []
        sent_count = 0

        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
                sent_count += 1
            except Exception as e:
                logger.debug(f"Client disconnected during broadcast: {e}")
                disconnected.append(connection)

        # Clean up disconnected clients
        async with self._lock:
            for conn in disconnected:
                if conn in self.active_connections:
                    self.active_connections.remove(conn)

        if disconnected:
            logger.info(f"Cleaned up {len(disconnected)} disconnected clients")

        return sent_count

    async def broadcast_ranking(self, ledger: Any, limit: int = 10) -> int:
        """Broadcast the current request ranking."""
        return await self.broadcast(RankingUpdateEvent.from_ledger(ledger, limit))

    async def broadcast_reply(self, reply: Dict[str, Any]) -> int:
        """
        Broadcast a generated reply.

        Args:
            reply: Dict with user, user_message, bot_response, delivered, failure
        """
        event = ReplyEvent(
            user=reply.get("user", ""),
            user_message=reply.get("user_message", ""),
            bot_response=reply.get("bot_response", ""),
            delivered=bool(reply.get("delivered")),
            failure=reply.get("failure"),
        )
        return await self.broadcast(event)

    async def broadcast_error(self, message: str, code: str = "", details: Optional[str] = None) -> int:
        """Broadcast an error so the dashboard can show it."""
        return await self.broadcast(ErrorEvent(message=message, code=code, details=details))

    async def broadcast_connection_status(
        self,
        state: str,
        username: str,
        room_info: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Broadcast a live connection state change."""
        room_info = room_info or {}
        viewers = room_info.get("viewer_count")
        event = ConnectionStatusEvent(
            state=state,
            username=username,
            room_id=room_info.get("room_id"),
            title=room_info.get("title"),
            viewer_count=int(viewers) if isinstance(viewers, int) or str(viewers or "").isdigit() else None,
        )
        return await self.broadcast(event)

    async def send_welcome(
        self,
        websocket: WebSocket,
        connection_state: str = "disconnected",
        total_songs: int = 0,
        reply_queue_length: int = 0,
    ) -> bool:
        """
        Send welcome message to a newly connected client.

        Args:
            websocket: The new client
            connection_state: Current live connection state
            total_songs: Distinct songs in the ranking
            reply_queue_length: Replies waiting to be sent

        Returns:
            True if sent successfully
        """
        event = ConnectionEvent(
            connection_state=connection_state,
            total_songs=total_songs,
            reply_queue_length=reply_queue_length,
        )
        return await self.send_personal(websocket, event)

    @property
    def connection_count(self) -> int:
        """Get the number of active connections."""
        return len(self.active_connections)

    @property
    def has_connections(self) -> bool:
        """Check if there are any active connections."""
        return len(self.active_connections) > 0
