import httpx
import pytest
from unittest.mock import AsyncMock, patch

from services.response_generator import ResponseGenerator

from tests.conftest import ollama_handler


def make_generator(handler, **kwargs):
    return ResponseGenerator(
        base_url="http://ollama.test",
        min_request_interval=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_generates_reply_with_ranking_context():
    calls = []
    generator = make_generator(ollama_handler(["  Hola! Suena despacito 🎶  "], models=("llama3.2:3b",), calls=calls))

    reply = await generator.generate("qué canción suena?", ["despacito", "provenza"])

    assert reply == "Hola! Suena despacito 🎶"
    payload = calls[0]
    assert payload["model"] == "llama3.2:3b"
    assert "format" not in payload
    assert "despacito, provenza" in payload["messages"][1]["content"]
    await generator.aclose()


@pytest.mark.asyncio
async def test_overload_retries_with_backoff():
    calls = []
    generator = make_generator(ollama_handler([503, 503, "por fin"], calls=calls))
    sleep = AsyncMock()

    with patch("services.response_generator.asyncio.sleep", sleep):
        reply = await generator.generate("hola?")

    assert reply == "por fin"
    assert len(calls) == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    assert generator.consecutive_overload_errors == 0
    await generator.aclose()


@pytest.mark.asyncio
async def test_overload_gives_up_after_retries():
    calls = []
    generator = make_generator(ollama_handler([500], calls=calls))

    with patch("services.response_generator.asyncio.sleep", AsyncMock()):
        reply = await generator.generate("hola?")

    assert reply is None
    assert len(calls) == 3
    assert generator.consecutive_overload_errors == 3
    await generator.aclose()


def test_backoff_is_capped():
    generator = ResponseGenerator()

    assert [generator.backoff_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_timeout_retries_once():
    calls = []
    generator = make_generator(ollama_handler([httpx.ReadTimeout("slow"), "listo"], calls=calls))
    sleep = AsyncMock()

    with patch("services.response_generator.asyncio.sleep", sleep):
        reply = await generator.generate("hola?")

    assert reply == "listo"
    sleep.assert_awaited_once_with(2.0)
    await generator.aclose()


@pytest.mark.asyncio
async def test_second_timeout_gives_up():
    generator = make_generator(ollama_handler([httpx.ReadTimeout("slow")]))

    with patch("services.response_generator.asyncio.sleep", AsyncMock()):
        reply = await generator.generate("hola?")

    assert reply is None
    await generator.aclose()


@pytest.mark.asyncio
async def test_unreachable_server_returns_none():
    generator = make_generator(ollama_handler([httpx.ConnectError("refused")]))

    assert await generator.generate("hola?") is None
    await generator.aclose()


@pytest.mark.asyncio
async def test_missing_model_is_forgotten():
    generator = make_generator(ollama_handler([404], models=("phi3:latest",)), configured_model="phi3")

    assert await generator.generate("hola?") is None
    assert generator._model is None
    assert generator._configured_rejected is True
    await generator.aclose()


@pytest.mark.asyncio
async def test_preferred_model_order():
    generator = make_generator(ollama_handler(["ok"], models=("gemma:2b", "mistral:7b", "phi3:mini")))

    assert await generator.resolve_model() == "phi3:mini"
    await generator.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("envelope", [
    {"message": None},
    {"message": {"content": ["hola"]}},
    ["hola"],
])
async def test_malformed_envelope_returns_none(envelope):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
        return httpx.Response(200, json=envelope)

    generator = make_generator(handler)

    assert await generator.generate("hola?") is None
    await generator.aclose()
