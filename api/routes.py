"""
REST API and WebSocket routes for the song request agent dashboard.
"""

import logging
from typing import Optional
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query
from pydantic import BaseModel, Field

from .websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------

class SettingsUpdate(BaseModel):
    """Request model for updating settings."""
    auto_reply: Optional[bool] = None
    auto_send: Optional[bool] = None
    confirm_requests: Optional[bool] = None
    reply_cooldown_seconds: Optional[float] = None


class TestMessageRequest(BaseModel):
    """Request model for simulating a chat message."""
    text: str = Field(..., min_length=1, max_length=500)
    username: str = "testuser"
    user_id: Optional[str] = None


# -------------------------------------------------------------------------
# Router Factory
# -------------------------------------------------------------------------

def create_router(
    ws_manager: WebSocketManager,
    get_status: callable,
    get_top_requests: callable,
    get_reply_queue: callable,
    get_reply_log: callable,
    get_settings: callable,
    update_settings: callable,
    simulate_message: callable = None,
) -> APIRouter:
    """
    Create the API router with all routes.

    Args:
        ws_manager: WebSocket connection manager
        get_status: Callback returning connection and queue state
        get_top_requests: Callback returning the ranking (takes a limit)
        get_reply_queue: Callback returning the reply queue snapshot
        get_reply_log: Callback returning recent audit log entries
        get_settings: Callback to get current settings
        update_settings: Callback to update settings
        simulate_message: Callback that pushes a fake chat message

    Returns:
        Configured APIRouter
    """
    router = APIRouter(prefix="/api")

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    @router.get("/health")
    async def health_check():
        """Health check endpoint."""
        try:
            status = await get_status()
        except Exception as e:
            logger.error(f"Error getting status: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "ok", "connections": ws_manager.connection_count, **status}

    # -------------------------------------------------------------------------
    # Ranking Endpoints
    # -------------------------------------------------------------------------

    @router.get("/requests/top")
    async def get_top(limit: int = Query(10, ge=1, le=100)):
        """Get the most requested songs."""
        try:
            return await get_top_requests(limit)
        except Exception as e:
            logger.error(f"Error getting ranking: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    # -------------------------------------------------------------------------
    # Reply Endpoints
    # -------------------------------------------------------------------------

    @router.get("/replies")
    async def get_replies():
        """Get the reply queue state."""
        try:
            return await get_reply_queue()
        except Exception as e:
            logger.error(f"Error getting reply queue: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/replies/log")
    async def get_log(limit: int = Query(20, ge=1, le=500)):
        """Get recent reply audit entries."""
        try:
            return await get_reply_log(limit)
        except Exception as e:
            logger.error(f"Error getting reply log: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    # -------------------------------------------------------------------------
    # Settings Endpoints
    # -------------------------------------------------------------------------

    @router.get("/settings")
    async def get_current_settings():
        """Get current runtime settings."""
        try:
            return await get_settings()
        except Exception as e:
            logger.error(f"Error getting settings: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.patch("/settings")
    async def update_current_settings(update: SettingsUpdate):
        """Update runtime settings."""
        try:
            return await update_settings(
                auto_reply=update.auto_reply,
                auto_send=update.auto_send,
                confirm_requests=update.confirm_requests,
                reply_cooldown_seconds=update.reply_cooldown_seconds,
            )
        except Exception as e:
            logger.error(f"Error updating settings: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    # -------------------------------------------------------------------------
    # WebSocket Endpoint
    # -------------------------------------------------------------------------

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time updates."""
        await ws_manager.connect(websocket)

        try:
            # Send welcome message with current state
            status = await get_status()
            await ws_manager.send_welcome(
                websocket,
                connection_state=status.get("connection_state", "disconnected"),
                total_songs=status.get("total_songs", 0),
                reply_queue_length=status.get("reply_queue_length", 0),
            )

            # Keep connection alive
            while True:
                await websocket.receive_text()
                await websocket.send_text('{"event_type": "pong"}')

        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            await ws_manager.disconnect(websocket)

    # -------------------------------------------------------------------------
    # Test Endpoints (for testing without a live broadcast)
    # -------------------------------------------------------------------------

    @router.post("/test/message")
    async def test_message(message: TestMessageRequest):
        """Test endpoint: Simulate an inbound chat message."""
        if simulate_message:
            try:
                result = await simulate_message(
                    message.username, message.user_id or message.username, message.text
                )
                return {"success": result is not None, "classification": result}
            except Exception as e:
                logger.error(f"Test message error: {e}")
                raise HTTPException(status_code=500, detail=str(e))
        raise HTTPException(status_code=501, detail="Test message callback not configured")

    return router
