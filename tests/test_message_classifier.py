import asyncio
import time

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from models.chat import ClassificationSource, MessageType
from services.message_classifier import MessageClassifier, OllamaClassificationClient
from services.ollama_client import OllamaService
from services.rules import match_request, normalize_song

from tests.conftest import ollama_handler


def make_client(handler, **kwargs):
    return OllamaClassificationClient(
        base_url="http://ollama.test",
        min_request_interval=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# -------------------------------------------------------------------------
# Rules
# -------------------------------------------------------------------------

def test_normalize_strips_control_words_and_punctuation():
    assert normalize_song("Pon Bad Bunny - Tití Me Preguntó!!") == "bad bunny - tití me preguntó"


def test_short_songs_are_rejected():
    assert match_request("pon abc") == ""
    assert match_request("play") == ""


def test_plain_chat_is_not_a_request():
    assert match_request("que buena musica") == ""


def test_hyphenated_chat_counts_as_request():
    # Known false positive of the hyphen trigger
    assert match_request("it's a well-known fact") == "its a well-known fact"


@pytest.mark.asyncio
async def test_fast_path_request_skips_llm():
    llm = AsyncMock()
    classifier = MessageClassifier(llm)

    result = await classifier.classify("Pon Bad Bunny - Tití Me Preguntó!!")

    assert result.type is MessageType.REQUEST
    assert result.song == "bad bunny - tití me preguntó"
    assert result.source is ClassificationSource.RULES
    llm.analyze.assert_not_called()


@pytest.mark.asyncio
async def test_short_message_skips_llm():
    llm = AsyncMock()
    classifier = MessageClassifier(llm)

    result = await classifier.classify("hola bro")

    assert result.type is MessageType.NORMAL
    assert result.source is ClassificationSource.SKIPPED
    llm.analyze.assert_not_called()


@pytest.mark.asyncio
async def test_long_message_uses_llm():
    llm = AsyncMock()
    llm.analyze.return_value = '{"type": "normal", "song": null}'
    classifier = MessageClassifier(llm)

    result = await classifier.classify("hola como estas")

    llm.analyze.assert_awaited_once_with("hola como estas")
    assert result.type is MessageType.NORMAL
    assert result.source is ClassificationSource.LLM
    assert not result.is_request


@pytest.mark.asyncio
async def test_llm_request_is_casefolded():
    llm = AsyncMock()
    llm.analyze.return_value = '{"type": "request", "song": "Karol G - Provenza"}'
    classifier = MessageClassifier(llm)

    result = await classifier.classify("me encantaria escuchar provenza de karol g")

    assert result.is_request
    assert result.song == "karol g - provenza"


@pytest.mark.asyncio
async def test_llm_failure_is_neutral():
    llm = AsyncMock()
    llm.analyze.side_effect = RuntimeError("boom")
    classifier = MessageClassifier(llm)

    result = await classifier.classify("esta canción está muy buena")

    assert result.type is MessageType.NORMAL
    assert result.song is None


# -------------------------------------------------------------------------
# LLM output parsing
# -------------------------------------------------------------------------

@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"type": "dance"}',
    '{"type": "request", "song": ""}',
    '{"type": "request"}',
    "",
    None,
])
def test_invalid_llm_output_is_neutral(raw):
    result = MessageClassifier.parse_llm_response(raw)

    assert result.type is MessageType.NORMAL
    assert result.song is None


def test_vote_drops_song():
    result = MessageClassifier.parse_llm_response('{"type": "vote", "song": "x"}')

    assert result.type is MessageType.VOTE
    assert result.song is None


# -------------------------------------------------------------------------
# Ollama client
# -------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overloaded_server_yields_neutral():
    client = make_client(ollama_handler([500]))
    classifier = MessageClassifier(client)

    for _ in range(3):
        result = await classifier.classify("que opinan de esta cancion")
        assert result.type is MessageType.NORMAL

    assert client.consecutive_overload_errors == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_success_resets_overload_counter():
    client = make_client(ollama_handler([500, 500, '{"type": "normal", "song": null}']))

    await client.analyze("mensaje uno largo")
    await client.analyze("mensaje dos largo")
    assert client.consecutive_overload_errors == 2

    await client.analyze("mensaje tres largo")
    assert client.consecutive_overload_errors == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_no_models_means_no_chat_call():
    calls = []
    client = make_client(ollama_handler(['{"type": "normal"}'], models=(), calls=calls))

    raw = await client.analyze("un mensaje bastante largo")

    assert MessageClassifier.parse_llm_response(raw).type is MessageType.NORMAL
    assert calls == []
    await client.aclose()


@pytest.mark.asyncio
async def test_payload_requests_json_format():
    calls = []
    client = make_client(ollama_handler(['{"type": "normal"}'], calls=calls))

    await client.analyze("un mensaje bastante largo")

    assert calls[0]["format"] == "json"
    assert calls[0]["stream"] is False
    assert calls[0]["model"] == "llama3:latest"
    await client.aclose()


@pytest.mark.asyncio
async def test_configured_model_matches_latest_tag():
    client = make_client(ollama_handler(["{}"], models=("mistral:latest", "llama3:latest")), configured_model="mistral")

    assert await client.resolve_model() == "mistral:latest"
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_configured_model_falls_back():
    client = make_client(ollama_handler(["{}"], models=("gemma:2b", "llama3:8b")), configured_model="phi3")

    assert await client.resolve_model() == "llama3:8b"
    await client.aclose()


def test_interval_grows_after_repeated_overloads():
    service = OllamaService(min_request_interval=1.5)

    service.record_overload()
    service.record_overload()
    assert service.current_interval() == 1.5

    service.record_overload()
    assert service.current_interval() == 6.0

    service.record_success()
    assert service.current_interval() == 1.5


def test_request_keeps_hyphen():
    assert match_request("pon bad bunny - titi me pregunto") == "bad bunny - titi me pregunto"


@pytest.mark.asyncio
async def test_concurrent_callers_take_successive_slots():
    service = OllamaService(min_request_interval=10)
    sleep = AsyncMock()

    with patch("services.ollama_client.asyncio.sleep", sleep):
        await asyncio.gather(*(service.wait_for_rate_limit() for _ in range(3)))

    waits = sorted(call.args[0] for call in sleep.await_args_list)
    assert waits == [pytest.approx(10, abs=0.5), pytest.approx(20, abs=0.5)]


@pytest.mark.asyncio
async def test_concurrent_analyze_calls_are_spaced():
    sent_at = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
        sent_at.append(time.monotonic())
        return httpx.Response(200, json={"message": {"content": '{"type": "normal"}'}})

    client = OllamaClassificationClient(
        base_url="http://ollama.test",
        min_request_interval=0.3,
        transport=httpx.MockTransport(handler),
    )

    await client.analyze("primer mensaje largo")
    await asyncio.gather(
        client.analyze("segundo mensaje largo"),
        client.analyze("tercer mensaje largo"),
    )

    gaps = [later - earlier for earlier, later in zip(sent_at, sent_at[1:])]
    assert len(gaps) == 2
    assert all(gap >= 0.25 for gap in gaps)
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("envelope", [
    {"message": None},
    {"message": {"content": 42}},
    ["not", "a", "dict"],
])
async def test_malformed_envelope_is_neutral(envelope):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
        return httpx.Response(200, json=envelope)

    client = make_client(handler)

    raw = await client.analyze("un mensaje bastante largo")

    assert MessageClassifier.parse_llm_response(raw).type is MessageType.NORMAL
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_models_are_not_relisted_right_away():
    tag_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            tag_requests.append(request)
            return httpx.Response(200, json={"models": []})
        return httpx.Response(200, json={"message": {"content": "{}"}})

    client = make_client(handler)

    await client.analyze("un mensaje bastante largo")
    await client.analyze("otro mensaje bastante largo")

    assert len(tag_requests) == 1

    client._no_model_since -= client.MODEL_RETRY_SECONDS
    await client.analyze("un tercer mensaje largo")

    assert len(tag_requests) == 2
    await client.aclose()
