"""
Reply orchestration.
Decides which messages deserve a reply and serializes every outbound
reply through one throttled queue.
"""

import asyncio
import logging
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence

from models.chat import ChatMessage, QueuedReply
from services.audit_log import ResponseAuditLog
from services.response_generator import ResponseGenerator
from services.senders import Sender

logger = logging.getLogger(__name__)

MIN_REPLY_LENGTH = 5
MAX_REPLY_LENGTH = 150
MENTION_MIN_LENGTH = 10

GREETINGS = ("hola", "hi", "hello", "buenas noches", "buenos días", "buenas tardes")
MUSIC_PHRASES = ("qué canción", "qué música", "qué tema", "pon", "ponme", "play")
DEFAULT_MENTION_NAMES = ("streamer", "dj")

_GREETING_PATTERN = re.compile(
    r"^(?:" + "|".join(re.escape(g) for g in GREETINGS) + r")[\s!.,]*$",
    re.IGNORECASE,
)
_AT_MENTION = re.compile(r"@\w+")

ReplyCallback = Callable[[dict], Awaitable[Any]]


def should_respond(text: str, mention_names: Sequence[str] = DEFAULT_MENTION_NAMES) -> bool:
    """
    Decide whether a conversational message deserves a reply.

    Exact greetings always qualify. Everything else must be 5-150
    characters, contain a letter or digit, and be a question, a direct
    mention longer than 10 characters, or a music question.
    """
    text = (text or "").strip().lower()

    if _GREETING_PATTERN.match(text):
        return True

    if len(text) < MIN_REPLY_LENGTH or len(text) > MAX_REPLY_LENGTH:
        return False

    # Emoji / punctuation only
    if not any(ch.isalnum() for ch in text):
        return False

    if "?" in text:
        return True

    names = [n.lower() for n in mention_names if n]
    has_mention = bool(_AT_MENTION.search(text)) or any(
        re.search(rf"\b{re.escape(name)}\b", text) for name in names
    )
    if has_mention and len(text) > MENTION_MIN_LENGTH:
        return True

    return any(phrase in text for phrase in MUSIC_PHRASES)


class ResponseOrchestrator:
    """
    Bounded FIFO of replies with a single drain loop.

    A full queue drops the new reply. Deliveries are spaced by the
    cooldown, measured from the last successful delivery.
    """

    def __init__(
        self,
        generator: Optional[ResponseGenerator],
        sender: Optional[Sender],
        audit_log: Optional[ResponseAuditLog] = None,
        max_queue_size: int = 5,
        cooldown_seconds: float = 5.0,
        mention_names: Sequence[str] = DEFAULT_MENTION_NAMES,
        confirmation_template: str = "@{user} anotada: {song}",
        on_reply: Optional[ReplyCallback] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            generator: Produces reply text
            sender: Delivers replies to the chat
            audit_log: Optional CSV sink for every generated reply
            max_queue_size: Capacity of the reply queue
            cooldown_seconds: Minimum spacing between deliveries
            mention_names: Names that count as a direct mention
            confirmation_template: Text for request confirmations
            on_reply: Called with a summary of every generated reply
        """
        self.generator = generator
        self.sender = sender
        self.audit_log = audit_log
        self.max_queue_size = max_queue_size
        self.cooldown_seconds = cooldown_seconds
        self.mention_names = list(mention_names)
        self.confirmation_template = confirmation_template
        self.on_reply = on_reply

        self.queue: Deque[QueuedReply] = deque()
        self.last_delivery_at: Optional[float] = None
        self.delivered_count = 0
        self.dropped_count = 0

        self._draining = False
        self._closed = False
        self._drain_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Eligibility
    # -------------------------------------------------------------------------

    def should_respond(self, message: ChatMessage) -> bool:
        """Check if a non-request message deserves a generated reply."""
        return should_respond(message.text, self.mention_names)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        message: ChatMessage,
        context_songs: Optional[List[str]] = None,
        allow_delivery: bool = True,
        preset_text: Optional[str] = None,
    ) -> bool:
        """
        Queue a reply and make sure the drain loop is running.

        Returns:
            True if queued, False if dropped (queue full or closed)
        """
        if self._closed:
            return False

        if len(self.queue) >= self.max_queue_size:
            self.dropped_count += 1
            logger.warning(f"Reply queue full, ignoring message: \"{message.text[:30]}\"")
            return False

        self.queue.append(
            QueuedReply(
                message=message,
                context_songs=list(context_songs or []),
                allow_delivery=allow_delivery,
                preset_text=preset_text,
            )
        )
        self._start_drain()
        return True

    def enqueue_confirmation(self, message: ChatMessage, song: str, allow_delivery: bool = True) -> bool:
        """Queue a request confirmation built from the template."""
        try:
            text = self.confirmation_template.format(user=message.sender_handle, song=song)
        except (KeyError, IndexError, ValueError) as e:
            logger.error(f"Bad confirmation template: {e}")
            return False
        return self.enqueue(message, allow_delivery=allow_delivery, preset_text=text)

    def _start_drain(self) -> None:
        if self._draining or self._closed:
            return
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self.queue and not self._closed:
                item = self.queue.popleft()
                await self._wait_for_cooldown()
                if self._closed:
                    break
                try:
                    await self._process(item)
                except Exception as e:
                    logger.error(f"Error processing reply: {e}")
        finally:
            self._draining = False

    async def _wait_for_cooldown(self) -> None:
        if self.last_delivery_at is None:
            return
        remaining = self.cooldown_seconds - (time.monotonic() - self.last_delivery_at)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _process(self, item: QueuedReply) -> None:
        message = item.message
        logger.info(f"Processing reply for: \"{message.text[:50]}\"")

        if item.preset_text is not None:
            text = item.preset_text
        elif self.generator is not None:
            text = await self.generator.generate(message.text, item.context_songs)
        else:
            text = None

        if not text:
            logger.info("No reply generated")
            return

        delivered = False
        failure = None
        if item.allow_delivery and self.sender is not None:
            logger.info(f"Sending reply: \"{text}\"")
            delivered = await self.sender.deliver(text)
            if delivered:
                self.last_delivery_at = time.monotonic()
                self.delivered_count += 1
                logger.info("Reply sent")
            else:
                failure = self.sender.last_failure.value if self.sender.last_failure else None
                logger.warning(f"Could not send reply ({failure or 'unknown reason'})")
        else:
            logger.info(f"Reply (not sent): \"{text}\"")

        if self.audit_log is not None:
            await self.audit_log.log_reply(message.sender_handle, message.text, text, delivered)

        if self.on_reply is not None:
            try:
                await self.on_reply({
                    "user": message.sender_handle,
                    "user_message": message.text,
                    "bot_response": text,
                    "delivered": delivered,
                    "failure": failure,
                })
            except Exception as e:
                logger.error(f"Reply callback failed: {e}")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def queue_length(self) -> int:
        return len(self.queue)

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def wait_idle(self) -> None:
        """Wait for the current drain loop to finish (if any)."""
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def close(self) -> None:
        """
        Stop replying. Pending replies are discarded and an in-flight
        one is cancelled when possible.
        """
        self._closed = True
        discarded = len(self.queue)
        self.queue.clear()
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if discarded:
            logger.info(f"Discarded {discarded} pending replies")

    def snapshot(self) -> dict:
        """Queue state for the API."""
        return {
            "queue_length": len(self.queue),
            "max_queue_size": self.max_queue_size,
            "is_draining": self._draining,
            "cooldown_seconds": self.cooldown_seconds,
            "seconds_since_last_delivery": (
                round(time.monotonic() - self.last_delivery_at, 1) if self.last_delivery_at is not None else None
            ),
            "delivered_count": self.delivered_count,
            "dropped_count": self.dropped_count,
            "pending": [
                {"user": item.message.sender_handle, "text": item.message.text}
                for item in self.queue
            ],
        }
