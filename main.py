"""
TikTok Live Song Request Agent - Main Entry Point

This is the main application file that initializes all services
and starts the dashboard server.

Usage:
    python main.py

Or with uvicorn directly:
    uvicorn main:app --host 127.0.0.1 --port 5174
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
import uvicorn

# Configure logging first
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("song-requests")

# Import our modules
from config.settings import get_settings, RuntimeSettings
from models.chat import ChatMessage
from models.ledger import RequestLedger
from models.stream import ConnectionState
from services.audit_log import ResponseAuditLog
from services.chat_pipeline import ChatPipeline
from services.connection_manager import ConnectionManager, build_connection
from services.message_classifier import MessageClassifier, OllamaClassificationClient
from services.response_generator import ResponseGenerator
from services.response_orchestrator import ResponseOrchestrator
from services.senders import Sender, create_sender
from api.websocket_manager import WebSocketManager
from api.routes import create_router


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Holds all application services and state."""

    def __init__(self):
        self.settings = get_settings()
        self.runtime_settings = RuntimeSettings(self.settings)
        self.ws_manager = WebSocketManager()
        self.ledger = RequestLedger()
        self.classifier_client: OllamaClassificationClient = None
        self.generator: ResponseGenerator = None
        self.audit_log: Optional[ResponseAuditLog] = None
        self.connection: ConnectionManager = None
        self.sender: Sender = None
        self.orchestrator: ResponseOrchestrator = None
        self.pipeline: ChatPipeline = None
        self.connect_task: asyncio.Task = None
        self.ranking_task: asyncio.Task = None
        self.server: uvicorn.Server = None
        self.shutting_down = False


app_state = AppState()


# =============================================================================
# Service Initialization
# =============================================================================

def initialize_services() -> None:
    """Create every service. Nothing touches the network here."""
    settings = app_state.settings

    app_state.classifier_client = OllamaClassificationClient(
        base_url=settings.ollama_base_url,
        configured_model=settings.ollama_model,
        timeout_seconds=settings.ollama_classify_timeout_seconds,
    )
    app_state.generator = ResponseGenerator(
        base_url=settings.ollama_base_url,
        configured_model=settings.ollama_model,
        timeout_seconds=settings.ollama_response_timeout_seconds,
    )

    if settings.save_responses_csv:
        app_state.audit_log = ResponseAuditLog(settings.responses_csv_path)
        logger.info(f"Saving replies to {settings.responses_csv_path}")

    app_state.connection = build_connection(
        settings,
        on_chat=handle_chat_message,
        on_status=handle_connection_status,
        on_error=handle_connection_error,
    )
    app_state.sender = create_sender(settings, app_state.connection)

    app_state.orchestrator = ResponseOrchestrator(
        generator=app_state.generator,
        sender=app_state.sender,
        audit_log=app_state.audit_log,
        max_queue_size=settings.reply_queue_size,
        cooldown_seconds=app_state.runtime_settings.reply_cooldown_seconds,
        mention_names=settings.mention_names_list,
        confirmation_template=settings.request_confirmation_template,
        on_reply=broadcast_reply,
    )
    app_state.pipeline = ChatPipeline(
        classifier=MessageClassifier(app_state.classifier_client),
        ledger=app_state.ledger,
        orchestrator=app_state.orchestrator,
        runtime_settings=app_state.runtime_settings,
        on_ranking_change=broadcast_ranking,
    )


async def check_ollama() -> bool:
    """Log which models Ollama offers and whether replies can be generated."""
    logger.info("Checking Ollama...")

    if not await app_state.generator.is_available():
        logger.warning("=" * 60)
        logger.warning(f"Ollama is not reachable at {app_state.settings.ollama_base_url}")
        logger.warning("Automatic replies and smart classification are disabled")
        logger.warning("Start it with: ollama serve")
        logger.warning("=" * 60)
        return False

    models = await app_state.generator.list_models()
    if not models:
        logger.warning("Ollama is running but no models are installed")
        logger.warning("Install one with: ollama pull llama3.2")
        return False

    logger.info(f"Ollama available with {len(models)} models: {', '.join(models)}")
    configured = app_state.settings.ollama_model
    if configured:
        if any(m == configured or m == f"{configured}:latest" for m in models):
            logger.info(f"Configured model: {configured}")
        else:
            logger.warning(f"Configured model '{configured}' is not installed")
            logger.warning("A suitable model will be detected automatically")
    return True


def log_startup_banner() -> None:
    """Log the broadcast target and sending capabilities."""
    settings = app_state.settings
    logger.info("=" * 60)
    logger.info("Starting TikTok Live Song Request Agent...")
    logger.info("=" * 60)
    logger.info(f"Broadcast: @{settings.clean_username}")
    logger.info(f"Live URL: {settings.live_url}")
    logger.info(f"Sender: {settings.sender_mode}")

    if settings.sender_mode == "direct":
        if settings.has_send_credentials:
            logger.info("Session credentials configured, direct sending enabled")
        else:
            logger.warning("No session credentials, replies cannot be sent directly")
            logger.warning("Set TIKTOK_SESSION_ID and TIKTOK_TT_TARGET_IDC, or use SENDER_MODE=browser")
        if not settings.euler_api_key:
            logger.warning("No EULER_API_KEY configured, sending messages may be rejected")

    logger.info(f"Auto reply: {'on' if app_state.runtime_settings.auto_reply else 'off'}")
    logger.info(f"Auto send: {'on' if app_state.runtime_settings.auto_send else 'off'}")


async def start_connection() -> None:
    """Open the live connection. Failures are retried by the manager."""
    try:
        await app_state.connection.open()
    except Exception as e:
        logger.error(f"Live connection failed: {e}")


# =============================================================================
# Event Handlers
# =============================================================================

async def handle_chat_message(message: ChatMessage) -> None:
    """Handle an inbound chat message from the live."""
    if app_state.pipeline:
        await app_state.pipeline.handle_message(message)


async def handle_connection_status(state: ConnectionState, room_info: Dict[str, Any]) -> None:
    """Forward connection state changes to the dashboard."""
    await app_state.ws_manager.broadcast_connection_status(
        state.value, app_state.settings.clean_username, room_info
    )


async def handle_connection_error(error: str) -> None:
    """Forward transport errors to the dashboard."""
    await app_state.ws_manager.broadcast_error(error, code="stream_error")


# =============================================================================
# WebSocket Broadcasting
# =============================================================================

async def broadcast_ranking() -> None:
    """Broadcast ranking update event."""
    await app_state.ws_manager.broadcast_ranking(app_state.ledger)


async def broadcast_reply(reply: dict) -> None:
    """Broadcast reply event."""
    await app_state.ws_manager.broadcast_reply(reply)


# =============================================================================
# Ranking Monitor
# =============================================================================

def log_top_requests(limit: int = 3) -> None:
    """Log the most requested songs."""
    top = app_state.ledger.get_top(limit)
    if not top:
        return
    logger.info("-" * 40)
    logger.info(f"TOP {limit} REQUESTS")
    for position, (song, entry) in enumerate(top, start=1):
        votes = "vote" if entry.count == 1 else "votes"
        logger.info(f"{position}. {song} ({entry.count} {votes})")
    logger.info("-" * 40)


async def ranking_monitor_loop():
    """Background task that periodically reports the ranking."""
    interval = app_state.settings.ranking_log_interval_seconds
    logger.info(f"Starting ranking monitor (every {interval:g}s)...")

    while True:
        try:
            await asyncio.sleep(interval)

            if not len(app_state.ledger):
                continue

            log_top_requests()

            if app_state.ws_manager.has_connections:
                await broadcast_ranking()

        except asyncio.CancelledError:
            logger.info("Ranking monitor stopped")
            break
        except Exception as e:
            logger.error(f"Ranking monitor error: {e}")


# =============================================================================
# Shutdown
# =============================================================================

async def shutdown_services() -> None:
    """Release every resource. Safe to call more than once."""
    if app_state.shutting_down:
        return
    app_state.shutting_down = True
    logger.info("Shutting down...")

    for task in (app_state.ranking_task, app_state.connect_task):
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    if app_state.connection:
        await app_state.connection.close()
    if app_state.orchestrator:
        await app_state.orchestrator.close()
    if app_state.sender:
        await app_state.sender.close()
    for client in (app_state.classifier_client, app_state.generator):
        if client:
            await client.aclose()

    logger.info("Shutdown complete")


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Treat an uncaught event loop error as fatal: log it and stop the server."""
    error = context.get("exception")
    logger.error("=" * 60)
    logger.error(f"Unhandled error: {error or context.get('message')}")
    logger.error("=" * 60)
    if app_state.server is not None:
        app_state.server.should_exit = True


# =============================================================================
# API Callbacks
# =============================================================================

async def api_get_status() -> dict:
    """Get connection and queue state for API."""
    connection = app_state.connection
    return {
        "connection_state": connection.state.value if connection else ConnectionState.DISCONNECTED.value,
        "username": app_state.settings.clean_username,
        "room": dict(connection.room_info) if connection else {},
        "total_songs": len(app_state.ledger),
        "reply_queue_length": app_state.orchestrator.queue_length if app_state.orchestrator else 0,
    }


async def api_get_top_requests(limit: int) -> dict:
    """Get ranking for API."""
    return app_state.ledger.to_dict(limit)


async def api_get_reply_queue() -> dict:
    """Get reply queue state for API."""
    if not app_state.orchestrator:
        return {"queue_length": 0, "pending": []}
    return app_state.orchestrator.snapshot()


async def api_get_reply_log(limit: int) -> list:
    """Get recent audit log entries for API."""
    if not app_state.audit_log:
        return []
    return await app_state.audit_log.get_recent_entries(limit)


async def api_get_settings() -> dict:
    """Get settings for API."""
    return app_state.runtime_settings.to_dict()


async def api_update_settings(
    auto_reply=None,
    auto_send=None,
    confirm_requests=None,
    reply_cooldown_seconds=None,
) -> dict:
    """Update settings for API."""
    updated = app_state.runtime_settings.update(
        auto_reply=auto_reply,
        auto_send=auto_send,
        confirm_requests=confirm_requests,
        reply_cooldown_seconds=reply_cooldown_seconds,
    )
    if app_state.orchestrator:
        app_state.orchestrator.cooldown_seconds = app_state.runtime_settings.reply_cooldown_seconds
    return updated


async def api_simulate_message(username: str, user_id: str, text: str) -> Optional[dict]:
    """Push a fake chat message through the pipeline."""
    if not app_state.pipeline:
        raise RuntimeError("Chat pipeline not initialized")
    message = ChatMessage(sender_id=user_id, sender_handle=username, text=text)
    result = await app_state.pipeline.handle_message(message)
    return result.to_dict() if result else None


# =============================================================================
# FastAPI Application
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    asyncio.get_running_loop().set_exception_handler(handle_loop_exception)

    log_startup_banner()
    initialize_services()
    await check_ollama()

    # Connect in the background so the dashboard is up while the live is offline
    app_state.connect_task = asyncio.create_task(start_connection())
    app_state.ranking_task = asyncio.create_task(ranking_monitor_loop())

    logger.info("=" * 60)
    logger.info(f"Server running at http://{app_state.settings.server_host}:{app_state.settings.server_port}")
    logger.info(f"Dashboard API: http://localhost:{app_state.settings.server_port}/api/health")
    logger.info("=" * 60)

    yield

    await shutdown_services()


# Create FastAPI app
app = FastAPI(
    title="TikTok Live Song Request Agent",
    description="Counts song requests from TikTok LIVE chat and answers viewers with a local LLM",
    version="1.0.0",
    lifespan=lifespan,
)

# Create and include API router
api_router = create_router(
    ws_manager=app_state.ws_manager,
    get_status=api_get_status,
    get_top_requests=api_get_top_requests,
    get_reply_queue=api_get_reply_queue,
    get_reply_log=api_get_reply_log,
    get_settings=api_get_settings,
    update_settings=api_update_settings,
    simulate_message=api_simulate_message,
)
app.include_router(api_router)


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """Main entry point."""
    settings = get_settings()

    config = uvicorn.Config(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level="info" if not settings.debug else "debug",
    )
    app_state.server = uvicorn.Server(config)
    app_state.server.run()


if __name__ == "__main__":
    main()
