"""
Reply generation through a local Ollama model.
"""

import asyncio
import logging
from typing import List, Optional

import httpx

from services.ollama_client import OllamaService

logger = logging.getLogger(__name__)

REPLY_SYSTEM_PROMPT = (
    "Eres un asistente amigable y divertido en un live de TikTok musical.\n"
    "Responde de forma breve, natural y en español.\n"
    "Mantén las respuestas cortas (máximo 2-3 líneas).\n"
    "Usa emojis ocasionalmente, sin abusar.\n"
    "Si alguien pregunta por canciones, menciona las más pedidas si las hay.\n"
    "Si el mensaje es un saludo, responde amigablemente.\n"
    "Si es una pregunta, responde de forma útil pero concisa."
)


class ResponseGenerator(OllamaService):
    """
    Generates short chat replies.

    Overloaded servers get up to MAX_RETRIES extra attempts with
    exponential backoff; a timeout gets a single retry. Every failure
    ends as None, never as an exception.
    """

    MIN_REQUEST_INTERVAL = 2.0
    MAX_RETRIES = 2
    BACKOFF_BASE_SECONDS = 1.0
    BACKOFF_MAX_SECONDS = 5.0
    TIMEOUT_RETRY_SECONDS = 2.0

    # Short Spanish replies: fast conversational models first
    MODEL_PREFERENCES = (
        r"llama3\.2",
        r"phi3|^phi(:|$)",
        r"mistral",
        r"qwen2",
        r"llama3",
        r"gemma",
        r"llama",
    )

    def build_payload(self, model: str, user_message: str, top_songs: Optional[List[str]] = None) -> dict:
        context = f"Canciones más pedidas: {', '.join(top_songs)}\n" if top_songs else ""
        return {
            "model": model,
            "stream": False,
            "messages": [
                {"role": "system", "content": REPLY_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f'Mensaje del usuario: "{user_message}"\n'
                        f"{context}\n"
                        "Genera una respuesta natural y breve para este mensaje."
                    ),
                },
            ],
        }

    def backoff_for(self, attempt: int) -> float:
        """Delay after the given (0-based) overloaded attempt."""
        return min(self.BACKOFF_BASE_SECONDS * (2 ** attempt), self.BACKOFF_MAX_SECONDS)

    async def generate(self, user_message: str, top_songs: Optional[List[str]] = None) -> Optional[str]:
        """
        Generate a reply for a chat message.

        Args:
            user_message: Text that triggered the reply
            top_songs: Most requested songs, used as context

        Returns:
            Reply text, or None if nothing could be generated
        """
        model = await self.resolve_model()
        if not model:
            self._report(
                "No models available in Ollama for replies",
                "Recommended for live replies: ollama pull llama3.2:3b or ollama pull phi3",
            )
            return None

        payload = self.build_payload(model, user_message, top_songs)
        timeout_retries = 1
        attempt = 0

        while attempt <= self.MAX_RETRIES:
            await self.wait_for_rate_limit()
            try:
                response = await self._post_chat(payload)
            except httpx.TimeoutException as e:
                if timeout_retries > 0:
                    timeout_retries -= 1
                    logger.warning(f"Ollama timed out, retrying in {self.TIMEOUT_RETRY_SECONDS:g}s")
                    await asyncio.sleep(self.TIMEOUT_RETRY_SECONDS)
                    continue
                self._report_exception(e, "generating a reply")
                return None
            except Exception as e:
                self._report_exception(e, "generating a reply")
                return None

            if response.status_code == 200:
                self.record_success()
                content = (self.message_content(response) or "").strip()
                if not content:
                    logger.warning("Ollama answered without content")
                return content or None

            if response.status_code >= 500:
                self.record_overload()
                if attempt < self.MAX_RETRIES:
                    delay = self.backoff_for(attempt)
                    logger.warning(
                        f"Ollama returned {response.status_code}, retrying in {delay:g}s "
                        f"(attempt {attempt + 1}/{self.MAX_RETRIES + 1})"
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                hint = self.overload_hint(response.text[:300], model)
                self._report(
                    f"Ollama returned {response.status_code} after {self.MAX_RETRIES + 1} attempts",
                    hint or "Ollama may be overloaded. Wait a few seconds before the next request.",
                )
                return None

            if response.status_code == 404:
                self.forget_model()
                available = await self.list_models()
                self._report(
                    f"Model '{model}' not found (404)",
                    f"Available models: {', '.join(available) or 'none'}",
                )
                return None

            self._report(f"Unexpected Ollama response: {response.status_code} {response.text[:200]}")
            return None

        return None
