import json

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

import main
from api.websocket_manager import WebSocketManager
from config.settings import RuntimeSettings, Settings
from models.ledger import RequestLedger
from services.chat_pipeline import ChatPipeline
from services.message_classifier import MessageClassifier
from services.response_orchestrator import ResponseOrchestrator


@pytest.fixture
def client(monkeypatch):
    """TestClient over the real app, with offline services and no lifespan."""
    runtime = RuntimeSettings(Settings(_env_file=None))
    ledger = RequestLedger()
    orchestrator = ResponseOrchestrator(generator=None, sender=None, cooldown_seconds=5)
    pipeline = ChatPipeline(MessageClassifier(), ledger, orchestrator, runtime)

    monkeypatch.setattr(main.app_state, "runtime_settings", runtime)
    monkeypatch.setattr(main.app_state, "ledger", ledger)
    monkeypatch.setattr(main.app_state, "orchestrator", orchestrator)
    monkeypatch.setattr(main.app_state, "pipeline", pipeline)
    monkeypatch.setattr(main.app_state, "connection", None)
    monkeypatch.setattr(main.app_state, "audit_log", None)

    return TestClient(main.app)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["connection_state"] == "disconnected"
    assert data["total_songs"] == 0


def test_simulated_request_updates_ranking(client):
    response = client.post("/api/test/message", json={"text": "pon despacito", "username": "ana"})

    assert response.status_code == 200
    assert response.json()["classification"]["type"] == "request"

    client.post("/api/test/message", json={"text": "pon despacito", "username": "beto"})
    client.post("/api/test/message", json={"text": "pon despacito", "username": "beto"})

    top = client.get("/api/requests/top", params={"limit": 5}).json()
    assert top["total_songs"] == 1
    assert top["top"][0] == {
        "position": 1,
        "song": "despacito",
        "count": 2,
        "first_requested_at": top["top"][0]["first_requested_at"],
    }


def test_simulated_message_requires_text(client):
    response = client.post("/api/test/message", json={"text": ""})

    assert response.status_code == 422


def test_settings_update_changes_cooldown(client):
    response = client.patch("/api/settings", json={"auto_send": True, "reply_cooldown_seconds": 9000})

    assert response.status_code == 200
    data = response.json()
    assert data["auto_send"] is True
    assert data["reply_cooldown_seconds"] == 600
    assert main.app_state.orchestrator.cooldown_seconds == 600
    assert client.get("/api/settings").json() == data


def test_reply_queue_and_log(client):
    replies = client.get("/api/replies").json()

    assert replies["queue_length"] == 0
    assert replies["max_queue_size"] == 5
    assert client.get("/api/replies/log").json() == []


def test_websocket_welcome(client):
    with client.websocket_connect("/api/ws") as websocket:
        welcome = websocket.receive_json()
        assert welcome["event_type"] == "connected"
        assert welcome["connection_state"] == "disconnected"
        assert welcome["reply_queue_length"] == 0

        websocket.send_text("ping")
        assert websocket.receive_json() == {"event_type": "pong"}


@pytest.mark.asyncio
async def test_stream_errors_are_broadcast(monkeypatch):
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_text = AsyncMock()
    ws_manager = WebSocketManager()
    await ws_manager.connect(websocket)
    monkeypatch.setattr(main.app_state, "ws_manager", ws_manager)

    await main.handle_connection_error("websocket hiccup")

    event = json.loads(websocket.send_text.await_args.args[0])
    assert event == {"event_type": "error", "message": "websocket hiccup", "code": "stream_error", "details": None}
