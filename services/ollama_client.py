"""
Shared plumbing for talking to a local Ollama server.
Handles model discovery, rate limiting and one-shot diagnostics.
"""

import asyncio
import logging
import re
import time
from typing import List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)


class OllamaService:
    """
    Base class for Ollama-backed collaborators.

    Every instance keeps its own resolved model, rate-limit clock and
    overload counter, so the classifier and the reply generator never
    throttle each other.
    """

    # Minimum seconds between two chat requests
    MIN_REQUEST_INTERVAL = 1.5

    # Consecutive 5xx responses before the spacing starts to grow
    MAX_OVERLOAD_ERRORS = 3

    LIST_TIMEOUT_SECONDS = 3.0

    # How long an empty model lookup is trusted before asking Ollama again
    MODEL_RETRY_SECONDS = 30.0

    # Regex patterns tried in order when no configured model is usable
    MODEL_PREFERENCES: Sequence[str] = (r"llama3", r"llama")

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        configured_model: Optional[str] = None,
        timeout_seconds: float = 0.0,
        min_request_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service.

        Args:
            base_url: Ollama server URL
            configured_model: Operator-chosen model, used when available
            timeout_seconds: Chat request timeout (0 = no limit)
            min_request_interval: Override for MIN_REQUEST_INTERVAL
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.configured_model = (configured_model or "").strip() or None
        self.timeout_seconds = timeout_seconds
        self.min_request_interval = (
            self.MIN_REQUEST_INTERVAL if min_request_interval is None else min_request_interval
        )
        self.consecutive_overload_errors = 0

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._model: Optional[str] = None
        self._configured_rejected = False
        self._configured_warned = False
        self._error_shown = False
        self._last_request_at: Optional[float] = None
        self._no_model_since: Optional[float] = None

    # -------------------------------------------------------------------------
    # HTTP Client
    # -------------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _chat_timeout(self) -> httpx.Timeout:
        if self.timeout_seconds and self.timeout_seconds > 0:
            return httpx.Timeout(self.timeout_seconds)
        return httpx.Timeout(None)

    async def _post_chat(self, payload: dict) -> httpx.Response:
        return await self._get_client().post("/api/chat", json=payload, timeout=self._chat_timeout())

    @staticmethod
    def message_content(response: httpx.Response) -> Optional[str]:
        """
        Pull message.content out of a chat response envelope.

        Returns:
            The content string, or None if the envelope has another shape
        """
        try:
            data = response.json()
        except ValueError:
            logger.debug("Ollama returned a non-JSON envelope")
            return None
        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.debug(f"Unexpected Ollama envelope: {str(data)[:100]}")
            return None
        return content

    # -------------------------------------------------------------------------
    # Model Discovery
    # -------------------------------------------------------------------------

    async def list_models(self) -> List[str]:
        """
        Get the names of the models installed in Ollama.

        Returns:
            Model names, or an empty list if Ollama cannot be reached
        """
        try:
            response = await self._get_client().get("/api/tags", timeout=self.LIST_TIMEOUT_SECONDS)
            if response.status_code != 200:
                return []
            data = response.json()
            return [m["name"] for m in data.get("models", []) if m.get("name")]
        except Exception as e:
            logger.debug(f"Could not list Ollama models: {e}")
            return []

    async def is_available(self) -> bool:
        """Check if the Ollama server answers the listing endpoint."""
        try:
            response = await self._get_client().get("/api/tags", timeout=self.LIST_TIMEOUT_SECONDS)
            return response.status_code == 200
        except Exception:
            return False

    def _pick_model(self, models: List[str]) -> Optional[str]:
        """Choose a model by preference order, falling back to the first one."""
        if not models:
            return None
        for pattern in self.MODEL_PREFERENCES:
            for name in models:
                if re.search(pattern, name):
                    return name
        return models[0]

    @staticmethod
    def _matches_configured(name: str, configured: str) -> bool:
        return name == configured or name == f"{configured}:latest"

    async def resolve_model(self) -> Optional[str]:
        """
        Find a usable model, caching the answer.

        The configured model wins when Ollama lists it. Otherwise the
        installed models are scanned in preference order. A miss is
        remembered for MODEL_RETRY_SECONDS, during which no listing
        request is made.

        Returns:
            Model name, or None if nothing is installed / Ollama is down
        """
        if self._model:
            return self._model

        if self._no_model_since is not None:
            if time.monotonic() - self._no_model_since < self.MODEL_RETRY_SECONDS:
                return None
            self._no_model_since = None

        models = await self.list_models()

        if self.configured_model and not self._configured_rejected:
            match = next((m for m in models if self._matches_configured(m, self.configured_model)), None)
            if match:
                self._model = match
                return match
            if not self._configured_warned:
                self._configured_warned = True
                logger.warning(f"Configured model '{self.configured_model}' is not available")
                logger.warning(f"Available models: {', '.join(models) or 'none'}")
                logger.warning("Falling back to automatic model detection")

        self._model = self._pick_model(models)
        if self._model:
            logger.info(f"{type(self).__name__} using model '{self._model}'")
        else:
            self._no_model_since = time.monotonic()
        return self._model

    def forget_model(self) -> None:
        """
        Drop the cached model after the server said it does not exist.
        The configured model is skipped from now on.
        """
        if self._model and self.configured_model and self._matches_configured(self._model, self.configured_model):
            self._configured_rejected = True
        self._model = None

    # -------------------------------------------------------------------------
    # Rate Limiting
    # -------------------------------------------------------------------------

    def current_interval(self) -> float:
        """Spacing required before the next request."""
        if self.consecutive_overload_errors >= self.MAX_OVERLOAD_ERRORS:
            return self.min_request_interval * (self.consecutive_overload_errors + 1)
        return self.min_request_interval

    async def wait_for_rate_limit(self) -> None:
        """
        Sleep until this caller's request slot comes up.

        The slot is reserved before sleeping, so concurrent callers line up
        one interval apart instead of waking together.
        """
        now = time.monotonic()
        if self._last_request_at is None:
            slot = now
        else:
            slot = max(now, self._last_request_at + self.current_interval())
        self._last_request_at = slot

        wait = slot - now
        if wait > 0:
            await asyncio.sleep(wait)

    def record_success(self) -> None:
        """A successful response is the only thing that clears the overload counter."""
        self.consecutive_overload_errors = 0
        self._error_shown = False

    def record_overload(self) -> None:
        self.consecutive_overload_errors += 1

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def _report(self, message: str, *hints: str, level: int = logging.ERROR) -> None:
        """Log a problem once until the next successful request."""
        if self._error_shown:
            logger.debug(message)
            return
        self._error_shown = True
        logger.log(level, message)
        for hint in hints:
            logger.log(level, hint)

    def _report_exception(self, e: Exception, action: str) -> None:
        if isinstance(e, httpx.TimeoutException):
            limit = f" (>{self.timeout_seconds:g}s)" if self.timeout_seconds else ""
            self._report(f"Timeout: Ollama took too long to respond{limit} while {action}")
        elif isinstance(e, httpx.TransportError):
            self._report(
                f"Cannot connect to Ollama at {self.base_url}",
                "Check that Ollama is running: ollama serve",
            )
        else:
            self._report(f"Error while {action}: {e}")

    @staticmethod
    def overload_hint(body: str, model: str) -> Optional[str]:
        """Turn a 5xx body into an operator hint, if it looks familiar."""
        lowered = body.lower()
        if "unable to allocate" in lowered or "buffer" in lowered or "memory" in lowered:
            return f"Model '{model}' may need more RAM than available. Try a smaller one: ollama pull llama3.2:1b"
        if "not found" in lowered or "load" in lowered:
            return f"The model may not be loaded. Try in another terminal: ollama run {model}"
        return None
