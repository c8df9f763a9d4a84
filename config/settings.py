"""
Application settings using Pydantic Settings.
Loads configuration from .env file with validation.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


DEFAULT_CHAT_INPUT_SELECTORS = [
    'xpath=//*[@id="tiktok-live-main-container-id"]/div[3]/div[2]/div/div[2]/div[2]/div[1]/div/div[1]/div[1]/div',
    "div[data-e2e='live-chat-input'] [contenteditable='true']",
    "role=textbox",
    "[placeholder*='comment' i]",
    "[placeholder*='mensaje' i]",
    "[contenteditable='true']",
    "input[type='text']",
]


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # TikTok Configuration
    # -------------------------------------------------------------------------
    tiktok_username: str = Field(
        default="saximt",
        description="Username of the broadcast to monitor (with or without @)"
    )
    tiktok_session_id: Optional[str] = Field(
        default=None,
        description="sessionid cookie of the account used to send messages"
    )
    tiktok_tt_target_idc: Optional[str] = Field(
        default=None,
        description="tt-target-idc cookie of the account used to send messages"
    )
    euler_api_key: Optional[str] = Field(
        default=None,
        description="Sign server API key (sending chat messages is a premium feature)"
    )
    connect_retry_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Delay before retrying a failed connection attempt"
    )
    reconnect_seconds: float = Field(
        default=3.0,
        ge=0,
        description="Delay before reconnecting after the stream drops"
    )

    # -------------------------------------------------------------------------
    # Ollama Configuration
    # -------------------------------------------------------------------------
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL of the local Ollama server"
    )
    ollama_model: Optional[str] = Field(
        default=None,
        description="Preferred model name (auto-detected when missing or unavailable)"
    )
    ollama_classify_timeout_seconds: float = Field(
        default=12.0,
        ge=0,
        description="Timeout for classification calls (0 = no limit)"
    )
    ollama_response_timeout_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Timeout for reply generation calls (0 = no limit)"
    )

    # -------------------------------------------------------------------------
    # Auto Replies
    # -------------------------------------------------------------------------
    enable_auto_reply: bool = Field(
        default=True,
        description="Generate replies for conversational messages"
    )
    enable_auto_send: bool = Field(
        default=False,
        description="Deliver generated replies to the chat (otherwise only logged)"
    )
    confirm_requests: bool = Field(
        default=False,
        description="Send a confirmation to chat when a song request is counted"
    )
    request_confirmation_template: str = Field(
        default="@{user} anotada: {song} 🎶",
        description="Template for request confirmations ({user}, {song})"
    )
    reply_queue_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum replies waiting for delivery"
    )
    reply_cooldown_seconds: float = Field(
        default=5.0,
        ge=0,
        le=600,
        description="Minimum spacing between two delivered replies"
    )
    mention_names: str = Field(
        default="streamer,dj",
        description="Role names that count as a direct mention (comma-separated in .env)"
    )

    # -------------------------------------------------------------------------
    # Sender Configuration
    # -------------------------------------------------------------------------
    sender_mode: str = Field(
        default="direct",
        pattern="^(direct|browser)$",
        description="How replies reach the chat: 'direct' or 'browser'"
    )
    browser_user_data_dir: str = Field(
        default="browser-profile",
        description="Persistent browser profile directory (log in once manually)"
    )
    browser_headless: bool = Field(
        default=True,
        description="Run the browser without a window"
    )
    browser_channel: Optional[str] = Field(
        default=None,
        description="Browser channel, e.g. 'chrome' to use the installed Chrome"
    )
    browser_chat_input_selectors: List[str] = Field(
        default_factory=lambda: list(DEFAULT_CHAT_INPUT_SELECTORS),
        description="Ordered selectors tried to locate the chat input (JSON list in .env)"
    )

    # -------------------------------------------------------------------------
    # Audit Log
    # -------------------------------------------------------------------------
    save_responses_csv: bool = Field(
        default=False,
        description="Append every generated reply to a CSV file"
    )
    responses_csv_path: str = Field(
        default="logs/responses.csv",
        description="CSV file for generated replies"
    )

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    server_host: str = Field(
        default="127.0.0.1",
        description="Server bind host"
    )
    server_port: int = Field(
        default=5174,
        description="Server bind port"
    )
    ranking_log_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often the top requests are logged and pushed to the dashboard"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    @property
    def clean_username(self) -> str:
        """Broadcast username without the leading @."""
        return self.tiktok_username.strip().lstrip("@")

    @property
    def live_url(self) -> str:
        """Public URL of the broadcast."""
        return f"https://www.tiktok.com/@{self.clean_username}/live"

    @property
    def has_send_credentials(self) -> bool:
        """Whether the account cookies needed to send messages are configured."""
        return bool(self.tiktok_session_id and self.tiktok_tt_target_idc)

    @property
    def mention_names_list(self) -> List[str]:
        """Get mention names as a list, including the broadcaster."""
        names = [n.strip().lower() for n in self.mention_names.split(",") if n.strip()]
        if self.clean_username and self.clean_username.lower() not in names:
            names.append(self.clean_username.lower())
        return names


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    Uses lru_cache to only load settings once.
    """
    return Settings()


# Runtime settings that can be modified via dashboard
class RuntimeSettings:
    """
    Settings that can be modified at runtime via the dashboard.
    These override the .env defaults during the current session.
    """

    def __init__(self, base_settings: Settings):
        self.auto_reply = base_settings.enable_auto_reply
        self.auto_send = base_settings.enable_auto_send
        self.confirm_requests = base_settings.confirm_requests
        self.reply_cooldown_seconds = base_settings.reply_cooldown_seconds

    def update(
        self,
        auto_reply: Optional[bool] = None,
        auto_send: Optional[bool] = None,
        confirm_requests: Optional[bool] = None,
        reply_cooldown_seconds: Optional[float] = None,
    ) -> dict:
        """Update runtime settings and return the new values."""
        if auto_reply is not None:
            self.auto_reply = auto_reply
        if auto_send is not None:
            self.auto_send = auto_send
        if confirm_requests is not None:
            self.confirm_requests = confirm_requests
        if reply_cooldown_seconds is not None:
            self.reply_cooldown_seconds = max(0.0, min(600.0, reply_cooldown_seconds))

        return self.to_dict()

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "auto_reply": self.auto_reply,
            "auto_send": self.auto_send,
            "confirm_requests": self.confirm_requests,
            "reply_cooldown_seconds": self.reply_cooldown_seconds,
        }
