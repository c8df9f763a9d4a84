"""
Reply delivery.
Two interchangeable ways to publish a message into the live chat.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional, Sequence

from playwright.async_api import async_playwright

from config.settings import DEFAULT_CHAT_INPUT_SELECTORS, Settings
from models.chat import DeliveryFailure

logger = logging.getLogger(__name__)


class Sender(ABC):
    """Publishes reply text into the broadcast's chat."""

    def __init__(self) -> None:
        self.last_failure: Optional[DeliveryFailure] = None

    @abstractmethod
    async def deliver(self, text: str) -> bool:
        """
        Send a message.

        Returns:
            True only if the message is known to have reached the chat.
            Failures are reported through `last_failure`, never raised.
        """

    async def close(self) -> None:
        """Release any resources. Safe to call more than once."""

    def _fail(self, reason: DeliveryFailure) -> bool:
        self.last_failure = reason
        return False


class DirectSender(Sender):
    """
    Sends through the live connection itself.
    Requires session cookies and, for TikTok, a premium sign server plan.
    """

    AUTHORIZATION_MARKERS = ("premium feature", "eulerstream.com", "401")

    def __init__(self, connection: Any):
        """
        Args:
            connection: ConnectionManager (or anything with is_connected,
                can_send, send() and last_send_error)
        """
        super().__init__()
        self.connection = connection

    @classmethod
    def classify_error(cls, error: Optional[str]) -> DeliveryFailure:
        """Map a transport error message to a failure reason."""
        lowered = (error or "").lower()
        if any(marker in lowered for marker in cls.AUTHORIZATION_MARKERS):
            return DeliveryFailure.AUTHORIZATION_REQUIRED
        return DeliveryFailure.TRANSPORT_ERROR

    async def deliver(self, text: str) -> bool:
        self.last_failure = None
        if not text or not text.strip():
            return self._fail(DeliveryFailure.EMPTY_MESSAGE)

        if not self.connection.is_connected:
            logger.warning("Not connected to the live, reply not sent")
            return self._fail(DeliveryFailure.NOT_CONNECTED)

        if not self.connection.can_send:
            logger.warning("No session credentials configured, reply not sent")
            logger.warning("Set TIKTOK_SESSION_ID and TIKTOK_TT_TARGET_IDC in .env to send messages")
            return self._fail(DeliveryFailure.MISSING_CREDENTIALS)

        if await self.connection.send(text.strip()):
            return True

        error = (self.connection.last_send_error or "").lower()
        reason = self.classify_error(error)
        if reason is DeliveryFailure.AUTHORIZATION_REQUIRED:
            logger.error("=" * 60)
            logger.error("SENDING MESSAGES REQUIRES A PREMIUM PLAN")
            logger.error("Sending chat messages needs a sign server API key with a premium plan.")
            logger.error("Set EULER_API_KEY in .env, or use SENDER_MODE=browser")
            logger.error("=" * 60)
        elif "auth" in error or "session" in error:
            logger.error("Check that the session credentials in .env are correct")
        return self._fail(reason)


# Returns true when the exact text is rendered outside any editable element
_ECHO_SCRIPT = """
(text) => {
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT);
  while (walker.nextNode()) {
    const node = walker.currentNode;
    if ((node.textContent || '').trim() !== text) continue;
    const el = node.parentElement;
    if (!el) continue;
    if (el.closest('input, textarea, [contenteditable="true"], [contenteditable=""]')) continue;
    return true;
  }
  return false;
}
"""


class ScrapingSender(Sender):
    """
    Types replies into the live page with a real browser (Playwright).

    Uses a persistent profile so the login done once by hand is reused.
    A send only counts when the text shows up in the rendered chat.
    """

    NAV_TIMEOUT_MS = 20000
    PROBE_TIMEOUT_MS = 3000
    PAGE_SETTLE_SECONDS = 3.0
    CONFIRM_TIMEOUT_SECONDS = 5.5
    CONFIRM_POLL_SECONDS = 0.4

    def __init__(
        self,
        username: str,
        user_data_dir: str = "browser-profile",
        headless: bool = True,
        channel: Optional[str] = None,
        selectors: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the sender.

        Args:
            username: Broadcaster username
            user_data_dir: Persistent browser profile directory
            headless: Run without a window
            channel: Browser channel ("chrome", "msedge", ...)
            selectors: Chat input selectors, tried in order
        """
        super().__init__()
        self.username = username.lstrip("@")
        self.live_url = f"https://www.tiktok.com/@{self.username}/live"
        self.user_data_dir = str(Path(user_data_dir).resolve())
        self.headless = headless
        self.channel = channel
        self.selectors: List[str] = list(selectors or DEFAULT_CHAT_INPUT_SELECTORS)

        self._playwright = None
        self._context = None
        self._page = None

    async def _ensure_context(self):
        if self._context is not None:
            return self._context

        self._playwright = await async_playwright().start()
        launch_args = {
            "headless": self.headless,
            "args": ["--no-sandbox", "--disable-setuid-sandbox"],
            "viewport": {"width": 1280, "height": 800},
            "ignore_default_args": ["--enable-automation"],
        }
        if self.channel:
            launch_args["channel"] = self.channel

        self._context = await self._playwright.chromium.launch_persistent_context(
            self.user_data_dir, **launch_args
        )
        logger.info(f"Browser started with profile {self.user_data_dir}")
        return self._context

    async def _get_page(self):
        if self._page is not None and not self._page.is_closed():
            return self._page
        context = await self._ensure_context()
        self._page = context.pages[0] if context.pages else await context.new_page()
        return self._page

    def _on_live_page(self, page) -> bool:
        return f"@{self.username}/live".lower() in (page.url or "").lower()

    async def find_chat_input(self, page):
        """
        Probe the configured selectors in order.

        Returns:
            The first locator that is visible and editable, or None
        """
        for selector in self.selectors:
            locator = page.locator(selector).first
            try:
                await locator.wait_for(state="visible", timeout=self.PROBE_TIMEOUT_MS)
                if await locator.is_editable():
                    logger.debug(f"Chat input found with {selector}")
                    return locator
            except Exception:
                continue
        return None

    async def wait_for_echo(self, page, text: str) -> bool:
        """Poll the rendered chat until the text appears or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.CONFIRM_TIMEOUT_SECONDS
        while True:
            try:
                if await page.evaluate(_ECHO_SCRIPT, text):
                    return True
            except Exception as e:
                logger.debug(f"Echo check failed: {e}")
            if loop.time() + self.CONFIRM_POLL_SECONDS > deadline:
                return False
            await asyncio.sleep(self.CONFIRM_POLL_SECONDS)

    async def deliver(self, text: str) -> bool:
        self.last_failure = None
        text = (text or "").strip()
        if not text:
            return self._fail(DeliveryFailure.EMPTY_MESSAGE)

        try:
            page = await self._get_page()

            if not self._on_live_page(page):
                await page.goto(self.live_url, wait_until="domcontentloaded", timeout=self.NAV_TIMEOUT_MS)
                # The chat loads after the page itself
                await asyncio.sleep(self.PAGE_SETTLE_SECONDS)

            chat_input = await self.find_chat_input(page)
            if chat_input is None:
                logger.warning("[Browser] Chat input not found. Is the user live and are you logged in?")
                return self._fail(DeliveryFailure.SELECTOR_UNAVAILABLE)

            await chat_input.click()
            await chat_input.fill("")
            await asyncio.sleep(0.3)
            await chat_input.fill(text)
            await asyncio.sleep(0.2)
            await page.keyboard.press("Enter")

            if await self.wait_for_echo(page, text):
                logger.info("[Browser] Message sent and seen in chat")
                return True

            logger.warning("[Browser] Message typed but never showed up in chat")
            return self._fail(DeliveryFailure.NOT_CONFIRMED)

        except Exception as e:
            logger.error(f"[Browser] Error sending message: {e}")
            return self._fail(DeliveryFailure.TRANSPORT_ERROR)

    async def close(self) -> None:
        """Close the browser. Does nothing if it was never started."""
        context, playwright = self._context, self._playwright
        self._context = None
        self._page = None
        self._playwright = None

        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing browser: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Ignoring error while stopping Playwright: {e}")


def create_sender(settings: Settings, connection: Any) -> Sender:
    """Build the sender selected by SENDER_MODE."""
    if settings.sender_mode == "browser":
        return ScrapingSender(
            username=settings.clean_username,
            user_data_dir=settings.browser_user_data_dir,
            headless=settings.browser_headless,
            channel=settings.browser_channel,
            selectors=settings.browser_chat_input_selectors,
        )
    return DirectSender(connection)
