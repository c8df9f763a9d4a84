"""
Live stream connection management.
Keeps the chat stream open across failures and forwards chat messages.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from config.settings import Settings
from models.chat import ChatMessage
from models.stream import ConnectionState, StreamEvent, StreamEventKind
from services.tiktok_transport import ChatTransport, TikTokLiveTransport

logger = logging.getLogger(__name__)

ChatHandler = Callable[[ChatMessage], Awaitable[Any]]
StatusHandler = Callable[[ConnectionState, Dict[str, Any]], Awaitable[Any]]
ErrorHandler = Callable[[str], Awaitable[Any]]

OFFLINE_MARKERS = ("not live", "no live", "offline", "useroffline", "no está en vivo")


class ConnectionManager:
    """
    Owns the live chat connection for one broadcast.

    Disconnected -> Connecting -> Connected. Failed attempts retry after
    connect_retry_seconds, drops reconnect after reconnect_seconds.
    close() moves to Closing, which no timer can leave.
    """

    def __init__(
        self,
        target: str,
        transport: ChatTransport,
        on_chat: Optional[ChatHandler] = None,
        on_status: Optional[StatusHandler] = None,
        connect_retry_seconds: float = 5.0,
        reconnect_seconds: float = 3.0,
        on_error: Optional[ErrorHandler] = None,
    ):
        """
        Initialize the manager.

        Args:
            target: Broadcaster username
            transport: Chat transport to drive
            on_chat: Called with every inbound ChatMessage
            on_status: Called on state changes with room metadata
            connect_retry_seconds: Backoff after a failed connect
            reconnect_seconds: Backoff after a dropped connection
            on_error: Called with the text of transport errors
        """
        self.target = target.lstrip("@")
        self.transport = transport
        self.on_chat = on_chat
        self.on_status = on_status
        self.on_error = on_error
        self.connect_retry_seconds = connect_retry_seconds
        self.reconnect_seconds = reconnect_seconds

        self.state = ConnectionState.DISCONNECTED
        self.room_info: Dict[str, Any] = {}
        self.last_send_error: Optional[str] = None

        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._handlers = {
            StreamEventKind.CONNECTED: self._on_connected,
            StreamEventKind.DISCONNECTED: self._on_disconnected,
            StreamEventKind.ERROR: self._on_error,
            StreamEventKind.CHAT: self._on_chat,
        }

        self.transport.set_listener(self.dispatch)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> "ConnectionManager":
        """
        Start connecting. A failed first attempt is retried in the background.

        Returns:
            self, usable as the connection handle
        """
        if self._closing:
            raise RuntimeError("Connection manager is closed")
        if self.state is ConnectionState.DISCONNECTED:
            await self._connect()
        return self

    async def close(self) -> None:
        """Stop the connection for good and cancel any pending reconnect."""
        if self._closing:
            return
        self._closing = True
        await self._set_state(ConnectionState.CLOSING)
        self._cancel_reconnect()
        logger.info(f"Closing connection to @{self.target}...")

        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while disconnecting: {e}")

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self.transport.is_connected

    @property
    def can_send(self) -> bool:
        return self.transport.can_send

    async def _connect(self) -> None:
        if self._closing:
            return

        await self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to the live of @{self.target}...")

        try:
            room_info = await self.transport.connect()
        except Exception as e:
            self._log_connect_failure(e)
            self._schedule_reconnect(self.connect_retry_seconds)
            return

        if self._closing:
            # close() ran while we were connecting
            try:
                await self.transport.disconnect()
            except Exception as e:
                logger.debug(f"Ignoring error while disconnecting: {e}")
            return

        await self.dispatch(StreamEvent.connected(room_info))

    def _log_connect_failure(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error("=" * 60)
        logger.error(f"Could not connect to @{self.target}: {message}")
        if any(marker in message.lower() or marker in type(error).__name__.lower() for marker in OFFLINE_MARKERS):
            logger.error("The user is not live right now")
            logger.error(f"Check: https://www.tiktok.com/@{self.target}/live")
        logger.error("=" * 60)

    def _schedule_reconnect(self, delay: float) -> None:
        if self._closing:
            return
        self._cancel_reconnect()
        logger.info(f"Retrying connection in {delay:g} seconds...")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # A timer may already be queued when close() runs
        if self._closing:
            return
        self._reconnect_task = None
        logger.info("Retrying connection...")
        await self._connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_status:
            try:
                await self.on_status(state, dict(self.room_info))
            except Exception as e:
                logger.error(f"Status callback failed: {e}")

    # -------------------------------------------------------------------------
    # Event Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, event: StreamEvent) -> None:
        """Route a transport event to its handler."""
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.debug(f"Ignoring stream event {event.kind}")
            return
        await handler(event.payload)

    async def _on_connected(self, payload: Dict[str, Any]) -> None:
        if self._closing:
            return
        self.room_info = {k: v for k, v in payload.items() if v is not None}
        self._cancel_reconnect()

        logger.info("=" * 60)
        logger.info("CONNECTED TO LIVE")
        logger.info(f"User: @{self.target}")
        if self.room_info.get("room_id"):
            logger.info(f"Room ID: {self.room_info['room_id']}")
        if self.room_info.get("title"):
            logger.info(f"Title: {self.room_info['title']}")
        if self.room_info.get("viewer_count") is not None:
            logger.info(f"Viewers: {self.room_info['viewer_count']}")
        if not self.room_info:
            logger.info("Room info not available")
        logger.info("=" * 60)

        await self._set_state(ConnectionState.CONNECTED)

    async def _on_disconnected(self, payload: Dict[str, Any]) -> None:
        if self._closing or self.state is not ConnectionState.CONNECTED:
            return
        logger.warning(f"Disconnected from the live {payload.get('reason', '')}".rstrip())
        await self._set_state(ConnectionState.CONNECTING)
        self._schedule_reconnect(self.reconnect_seconds)

    async def _on_error(self, payload: Dict[str, Any]) -> None:
        # Errors alone never trigger a reconnect; only a disconnect does
        error = payload.get("error") or "unknown error"
        logger.error(f"TikTok error: {error}")
        if self.on_error:
            try:
                await self.on_error(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    async def _on_chat(self, payload: Dict[str, Any]) -> None:
        message = ChatMessage(
            sender_id=str(payload.get("sender_id") or ""),
            sender_handle=str(payload.get("sender_handle") or ""),
            text=str(payload.get("text") or ""),
            received_at=datetime.now(),
        )
        if not self.on_chat:
            return
        try:
            await self.on_chat(message)
        except Exception as e:
            logger.exception(f"Error processing message from {message.sender_handle}: {e}")

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(self, text: str) -> bool:
        """
        Send a chat message through the live connection.

        Returns:
            True if the transport accepted the message. Never raises.
        """
        self.last_send_error = None

        if not self.is_connected:
            self.last_send_error = "not connected"
            logger.warning("Not connected, cannot send message")
            return False

        if not self.can_send:
            self.last_send_error = "missing credentials"
            logger.warning("No session credentials configured, cannot send message")
            return False

        try:
            await self.transport.send(text)
            return True
        except Exception as e:
            self.last_send_error = str(e) or type(e).__name__
            logger.error(f"Error sending message: {self.last_send_error}")
            return False


def build_connection(
    settings: Settings,
    on_chat: Optional[ChatHandler] = None,
    on_status: Optional[StatusHandler] = None,
    on_error: Optional[ErrorHandler] = None,
) -> ConnectionManager:
    """Build an unopened manager over the TikTok transport for the configured broadcast."""
    transport = TikTokLiveTransport(
        unique_id=settings.clean_username,
        session_id=settings.tiktok_session_id,
        tt_target_idc=settings.tiktok_tt_target_idc,
        sign_api_key=settings.euler_api_key,
    )
    return ConnectionManager(
        target=settings.clean_username,
        transport=transport,
        on_chat=on_chat,
        on_status=on_status,
        connect_retry_seconds=settings.connect_retry_seconds,
        reconnect_seconds=settings.reconnect_seconds,
        on_error=on_error,
    )


async def open_connection(
    settings: Settings,
    on_chat: ChatHandler,
    on_status: Optional[StatusHandler] = None,
    on_error: Optional[ErrorHandler] = None,
) -> ConnectionManager:
    """
    Build the TikTok transport for the configured broadcast and open it.

    Returns:
        The connection handle
    """
    return await build_connection(settings, on_chat, on_status, on_error).open()
