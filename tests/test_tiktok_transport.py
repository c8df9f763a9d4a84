from types import SimpleNamespace

from models.stream import StreamEventKind
from services.tiktok_transport import comment_to_event, room_metadata


def test_comment_becomes_chat_event():
    event = SimpleNamespace(
        user=SimpleNamespace(id=123456, unique_id="ana_music", nickname="Ana"),
        comment="pon despacito",
    )

    stream_event = comment_to_event(event)

    assert stream_event.kind is StreamEventKind.CHAT
    assert stream_event.payload == {
        "sender_id": "123456",
        "sender_handle": "ana_music",
        "text": "pon despacito",
    }


def test_comment_without_user_is_still_forwarded():
    stream_event = comment_to_event(SimpleNamespace(user=None, comment="hola"))

    assert stream_event.payload["sender_handle"] == "unknown"
    assert stream_event.payload["text"] == "hola"


def test_room_metadata_picks_known_fields():
    client = SimpleNamespace(
        room_id=7300000000,
        room_info={"title": "Saxo en vivo", "user_count": 42, "owner": {"display_id": "saximt"}},
    )

    assert room_metadata(client) == {
        "room_id": "7300000000",
        "title": "Saxo en vivo",
        "owner": "saximt",
        "viewer_count": 42,
    }


def test_room_metadata_without_room_info():
    client = SimpleNamespace(room_id=None, room_info=None)

    assert room_metadata(client) == {"room_id": None, "title": None, "owner": None, "viewer_count": None}
