"""
TikTok LIVE chat transport.
Wraps the TikTokLive client and turns its callbacks into StreamEvents.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from TikTokLive import TikTokLiveClient
from TikTokLive.client.web.web_settings import WebDefaults
from TikTokLive.events import CommentEvent, DisconnectEvent

from models.stream import StreamEvent

logger = logging.getLogger(__name__)

StreamListener = Callable[[StreamEvent], Awaitable[None]]


class ChatTransport(ABC):
    """
    Minimal contract the ConnectionManager needs from a live chat library.

    connect() raises on failure and returns room metadata on success.
    Everything that happens afterwards arrives through the listener.
    """

    def __init__(self) -> None:
        self._listener: Optional[StreamListener] = None

    def set_listener(self, listener: StreamListener) -> None:
        self._listener = listener

    async def emit(self, event: StreamEvent) -> None:
        if self._listener is not None:
            await self._listener(event)

    @abstractmethod
    async def connect(self) -> Dict[str, Any]:
        """Open the stream. Returns room metadata."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the stream."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send a chat message. Raises on failure."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the stream is currently open."""

    @property
    @abstractmethod
    def can_send(self) -> bool:
        """Whether credentials for sending are configured."""


def _first(obj: Any, *names: str) -> Any:
    for name in names:
        value = getattr(obj, name, None)
        if value not in (None, ""):
            return value
    return None


def comment_to_event(event: Any) -> StreamEvent:
    """Normalize a TikTokLive CommentEvent."""
    user = _first(event, "user", "user_info")
    sender_id = _first(user, "id", "user_id", "unique_id") if user is not None else None
    handle = _first(user, "unique_id", "nickname", "nick_name") if user is not None else None
    return StreamEvent.chat(
        sender_id=str(sender_id or handle or "unknown"),
        sender_handle=str(handle or "unknown"),
        text=getattr(event, "comment", "") or "",
    )


def room_metadata(client: Any) -> Dict[str, Any]:
    """Pick the interesting fields out of the room info, when fetched."""
    info = getattr(client, "room_info", None) or {}
    owner = info.get("owner") or {}
    stats = info.get("stats") or {}
    viewers = (
        info.get("user_count")
        or info.get("viewer_count")
        or stats.get("user_count_str")
        or stats.get("total_user")
    )
    return {
        "room_id": str(getattr(client, "room_id", "") or info.get("id_str") or "") or None,
        "title": info.get("title") or None,
        "owner": owner.get("display_id") or owner.get("nickname") or None,
        "viewer_count": viewers,
    }


class TikTokLiveTransport(ChatTransport):
    """ChatTransport backed by the TikTokLive library."""

    def __init__(
        self,
        unique_id: str,
        session_id: Optional[str] = None,
        tt_target_idc: Optional[str] = None,
        sign_api_key: Optional[str] = None,
    ):
        """
        Initialize the transport.

        Args:
            unique_id: Broadcaster username
            session_id: sessionid cookie (needed to send)
            tt_target_idc: tt-target-idc cookie (needed to send)
            sign_api_key: Sign server API key
        """
        super().__init__()
        self.unique_id = unique_id.lstrip("@")
        self._has_session = bool(session_id and tt_target_idc)

        if sign_api_key:
            WebDefaults.tiktok_sign_api_key = sign_api_key

        self._client = TikTokLiveClient(unique_id=f"@{self.unique_id}")
        if self._has_session:
            self._client.web.set_session(session_id, tt_target_idc)

        self._client.add_listener(CommentEvent, self._on_comment)
        self._client.add_listener(DisconnectEvent, self._on_disconnect)
        self._task: Optional[asyncio.Task] = None

    async def connect(self) -> Dict[str, Any]:
        self._task = await self._client.start(fetch_room_info=True)
        self._task.add_done_callback(self._on_task_done)
        return room_metadata(self._client)

    async def disconnect(self) -> None:
        if self._client.connected:
            await self._client.disconnect()

    async def send(self, text: str) -> None:
        await self._client.send_room_chat(text)

    @property
    def is_connected(self) -> bool:
        return bool(self._client.connected)

    @property
    def can_send(self) -> bool:
        return self._has_session

    async def _on_comment(self, event: CommentEvent) -> None:
        await self.emit(comment_to_event(event))

    async def _on_disconnect(self, event: DisconnectEvent) -> None:
        await self.emit(StreamEvent.disconnected())

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            asyncio.ensure_future(self.emit(StreamEvent.error(error)))
