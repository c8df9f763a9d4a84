import json
from typing import Any, Dict, List

import httpx
import pytest

from models.chat import ChatMessage
from models.stream import StreamEvent
from services.tiktok_transport import ChatTransport


class FakeTransport(ChatTransport):
    """In-memory ChatTransport driven by the tests."""

    def __init__(self, fail_connects: int = 0, can_send: bool = True):
        super().__init__()
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.sent: List[str] = []
        self.send_error: Exception = None
        self.connected = False
        self._can_send = can_send
        self.room_info: Dict[str, Any] = {"room_id": "7300000000", "title": "Saxo en vivo", "viewer_count": 42}

    async def connect(self) -> Dict[str, Any]:
        self.connect_calls += 1
        if self.connect_calls <= self.fail_connects:
            raise RuntimeError("UserOfflineError: the user is not live")
        self.connected = True
        return dict(self.room_info)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def send(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def can_send(self) -> bool:
        return self._can_send

    async def drop(self, reason: str = "") -> None:
        self.connected = False
        await self.emit(StreamEvent.disconnected(reason))


def ollama_handler(chat_responses: List[Any], models=("llama3:latest",), calls: List[dict] = None):
    """
    Build an httpx.MockTransport handler for Ollama.
    Each chat call consumes the next entry: an int status, a content string,
    or an exception instance to raise.
    """
    responses = list(chat_responses)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in models]})

        if request.url.path == "/api/chat":
            if calls is not None:
                calls.append(json.loads(request.content))
            item = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(item, Exception):
                raise item
            if isinstance(item, int):
                return httpx.Response(item, text="server busy")
            return httpx.Response(200, json={"message": {"role": "assistant", "content": item}})

        return httpx.Response(404)

    return handler


@pytest.fixture
def make_message():
    def _make(text: str, user: str = "viewer1", user_id: str = None) -> ChatMessage:
        return ChatMessage(sender_id=user_id or f"id-{user}", sender_handle=user, text=text)
    return _make


@pytest.fixture
def fake_transport():
    return FakeTransport()
