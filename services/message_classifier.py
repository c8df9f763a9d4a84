"""
Two-tier chat message classification.
Deterministic rules first, a local LLM only when the rules are not enough.
"""

import json
import logging
from typing import Optional, Union

from models.chat import ChatMessage, ClassificationResult, ClassificationSource, MessageType
from services.ollama_client import OllamaService
from services.rules import match_request

logger = logging.getLogger(__name__)

NEUTRAL_JSON = json.dumps({"type": MessageType.NORMAL.value, "song": None})

CLASSIFY_SYSTEM_PROMPT = (
    "Eres un moderador experto de lives musicales.\n"
    "Responde SOLO con JSON válido.\n"
    "No expliques nada."
)

CLASSIFY_USER_PROMPT = """Clasifica este mensaje.

Devuelve exactamente este formato:
{{
  "type": "request|vote|rating|normal|spam",
  "song": null | "artista - canción"
}}

Mensaje:
"{text}"
"""


class OllamaClassificationClient(OllamaService):
    """
    Asks Ollama to label a message with the fixed schema.
    Never raises: any failure yields the neutral JSON document.
    """

    MIN_REQUEST_INTERVAL = 1.5
    MODEL_PREFERENCES = (r"llama3", r"llama")

    def build_payload(self, model: str, text: str) -> dict:
        return {
            "model": model,
            "format": "json",
            "stream": False,
            "messages": [
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {"role": "user", "content": CLASSIFY_USER_PROMPT.format(text=text)},
            ],
        }

    async def analyze(self, text: str) -> str:
        """
        Classify a message.

        Args:
            text: Raw chat text

        Returns:
            The model's JSON string, or NEUTRAL_JSON on any failure
        """
        model = await self.resolve_model()
        if not model:
            self._report(
                "No models available in Ollama",
                "Install one: ollama pull llama3",
            )
            return NEUTRAL_JSON

        await self.wait_for_rate_limit()

        try:
            response = await self._post_chat(self.build_payload(model, text))
        except Exception as e:
            self._report_exception(e, "classifying a message")
            return NEUTRAL_JSON

        if response.status_code >= 500:
            self.record_overload()
            body = response.text[:500]
            hint = self.overload_hint(body, model)
            self._report(
                f"Ollama returned {response.status_code} while classifying "
                f"({self.consecutive_overload_errors} in a row): {body}",
                *([hint] if hint else []),
                level=logging.WARNING,
            )
            return NEUTRAL_JSON

        if response.status_code == 404:
            self.forget_model()
            self._report(
                f"Model '{model}' not found (404)",
                "Install a model: ollama pull llama3",
            )
            return NEUTRAL_JSON

        if response.status_code != 200:
            self._report(f"Unexpected Ollama response while classifying: {response.status_code}")
            return NEUTRAL_JSON

        self.record_success()
        return self.message_content(response) or NEUTRAL_JSON


class MessageClassifier:
    """
    Classifies chat messages as song requests, votes, ratings, normal chat or spam.

    The fast path is a keyword match plus normalization. The slow path
    asks the LLM and only runs for messages longer than SLOW_PATH_MIN_LENGTH.
    """

    SLOW_PATH_MIN_LENGTH = 10

    def __init__(self, llm_client: Optional[OllamaClassificationClient] = None):
        """
        Initialize the classifier.

        Args:
            llm_client: Slow-path collaborator; None disables the slow path
        """
        self.llm_client = llm_client

    def classify_fast(self, text: str) -> Optional[ClassificationResult]:
        """Run the rule-based tier. Returns None when the rules do not decide."""
        song = match_request(text)
        if song:
            return ClassificationResult(
                type=MessageType.REQUEST,
                song=song,
                source=ClassificationSource.RULES,
            )
        return None

    async def classify(self, message: Union[ChatMessage, str]) -> ClassificationResult:
        """
        Classify a chat message.

        Args:
            message: ChatMessage or raw text

        Returns:
            ClassificationResult (neutral when nothing could be decided)
        """
        text = message.text if isinstance(message, ChatMessage) else message
        text = (text or "").strip()

        result = self.classify_fast(text)
        if result:
            return result

        if self.llm_client is None or len(text) <= self.SLOW_PATH_MIN_LENGTH:
            return ClassificationResult.neutral()

        try:
            raw = await self.llm_client.analyze(text)
        except Exception as e:
            logger.error(f"Slow-path classification failed: {e}")
            return ClassificationResult.neutral(ClassificationSource.LLM)

        return self.parse_llm_response(raw)

    @staticmethod
    def parse_llm_response(raw: Optional[str]) -> ClassificationResult:
        """
        Parse the model output into a ClassificationResult.
        Anything that does not match the schema is neutral.
        """
        neutral = ClassificationResult.neutral(ClassificationSource.LLM)
        if not raw:
            return neutral

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Discarding non-JSON classification: {raw[:100]}")
            return neutral

        if not isinstance(data, dict):
            return neutral

        try:
            message_type = MessageType(str(data.get("type", "")).strip().lower())
        except ValueError:
            return neutral

        song = data.get("song")
        if message_type is MessageType.REQUEST:
            if not isinstance(song, str) or not song.strip():
                return neutral
            return ClassificationResult(
                type=message_type,
                song=song.strip().casefold(),
                source=ClassificationSource.LLM,
            )

        return ClassificationResult(type=message_type, song=None, source=ClassificationSource.LLM)
