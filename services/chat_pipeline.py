"""
Chat message pipeline.
Routes every inbound chat message: requests go to the ledger,
conversation may get a generated reply.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from config.settings import RuntimeSettings
from models.chat import ChatMessage, ClassificationResult
from models.ledger import RequestLedger
from services.message_classifier import MessageClassifier
from services.response_orchestrator import ResponseOrchestrator

logger = logging.getLogger(__name__)

RankingCallback = Callable[[], Awaitable[Any]]


class ChatPipeline:
    """Glue between the connection, the classifier, the ledger and the reply queue."""

    CONTEXT_SONGS = 3

    def __init__(
        self,
        classifier: MessageClassifier,
        ledger: RequestLedger,
        orchestrator: ResponseOrchestrator,
        runtime_settings: RuntimeSettings,
        on_ranking_change: Optional[RankingCallback] = None,
    ):
        self.classifier = classifier
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.runtime_settings = runtime_settings
        self.on_ranking_change = on_ranking_change
        self.processed_count = 0

    async def handle_message(self, message: ChatMessage) -> Optional[ClassificationResult]:
        """
        Process one chat message.

        Args:
            message: Inbound chat message

        Returns:
            The classification, or None if processing failed
        """
        self.processed_count += 1
        logger.info(f"[{message.sender_handle}]: {message.text}")

        try:
            result = await self.classifier.classify(message)

            if result.is_request:
                await self._handle_request(message, result.song)
            elif self.runtime_settings.auto_reply and self.orchestrator.should_respond(message):
                self.orchestrator.enqueue(
                    message,
                    context_songs=self.ledger.top_songs(self.CONTEXT_SONGS),
                    allow_delivery=self.runtime_settings.auto_send,
                )
            return result

        except Exception as e:
            logger.error(f"Error processing message from {message.sender_handle}: {e}")
            return None

    async def _handle_request(self, message: ChatMessage, song: str) -> None:
        if not self.ledger.add_request(song, message.sender_id):
            logger.info(f"Duplicate request ignored: \"{song}\" by {message.sender_handle}")
            return

        logger.info(f"Song requested: \"{song}\" by {message.sender_handle} ({self.ledger.count_for(song)} votes)")

        if self.runtime_settings.confirm_requests:
            self.orchestrator.enqueue_confirmation(
                message, song, allow_delivery=self.runtime_settings.auto_send
            )

        if self.on_ranking_change is not None:
            try:
                await self.on_ranking_change()
            except Exception as e:
                logger.error(f"Ranking callback failed: {e}")
