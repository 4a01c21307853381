"""
Browser session manager for Playwright-driven Chromium instances.

Each session owns one browser process, one context and one page. On a
phone-class host a single Chromium process is already a large share of
memory, so the manager enforces a hard session cap and rejects (never
queues) creates beyond it.

The launch baseline targets Termux/proot style environments:
- no sandbox (not available without root)
- no GPU, no /dev/shm, single process, no zygote
- a desktop User-Agent so sites don't redirect to mobile variants
"""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.config_loader import BrowserSettings
from core.content_guard import is_dangerous_url, sanitize_url_for_display
from core.exceptions import (
    NavigationTimeout,
    ServiceUnavailable,
    SessionAlreadyExists,
    SessionLimitExceeded,
    SessionNotFound,
)
from core.logger import get_logger

logger = get_logger("mobile_gateway.browser_sessions")

BASELINE_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--single-process",
    "--no-zygote",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-update",
    "--disable-default-apps",
    "--disable-features=TranslateUI",
    "--disable-hang-monitor",
    "--disable-ipc-flooding-protection",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--force-color-profile=srgb",
    "--metrics-recording-only",
    "--safebrowsing-disable-auto-update",
    "--password-store=basic",
    "--use-mock-keychain",
]

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)

# Playwright's load states; the puppeteer-style names are accepted as aliases.
WAIT_CONDITIONS = {
    "commit": "commit",
    "domcontentloaded": "domcontentloaded",
    "load": "load",
    "networkidle": "networkidle",
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
}

SCREENSHOT_FORMATS = ("png", "jpeg")

TEXT_CONTENT_SCRIPT = "() => document.body ? document.body.innerText : ''"


@dataclass
class BrowserHandle:
    """The browser/context/page triple behind a session."""

    browser: Any
    context: Any
    page: Any


@dataclass
class Session:
    """
    One live browser automation context.

    The handle is owned by BrowserSessionManager; other components only see
    the id.
    """

    id: str
    handle: BrowserHandle = field(repr=False)
    created_at: datetime = field(default_factory=datetime.now)


class BrowserLauncher(ABC):
    """Capability that starts and releases browser handles."""

    @abstractmethod
    async def launch(self) -> BrowserHandle:
        pass

    @abstractmethod
    async def release(self, handle: BrowserHandle) -> None:
        pass

    async def close(self) -> None:
        """Release launcher-wide resources."""
        pass


class PlaywrightLauncher(BrowserLauncher):
    """
    Launches one Chromium process per session through Playwright.

    The Playwright driver itself is started lazily on first launch and shared
    by every session.
    """

    def __init__(self, settings: BrowserSettings) -> None:
        self.settings = settings
        self.playwright: Optional[Playwright] = None
        self._lock = asyncio.Lock()

    async def _get_playwright(self) -> Playwright:
        async with self._lock:
            if self.playwright is None:
                self.playwright = await async_playwright().start()
            return self.playwright

    async def launch(self) -> BrowserHandle:
        playwright = await self._get_playwright()

        browser: Browser = await playwright.chromium.launch(
            executable_path=self.settings.executable_path,
            headless=self.settings.headless,
            args=[*BASELINE_CHROMIUM_ARGS, *self.settings.args],
        )
        try:
            context: BrowserContext = await browser.new_context(
                user_agent=DESKTOP_USER_AGENT,
                viewport={
                    "width": self.settings.viewport_width,
                    "height": self.settings.viewport_height,
                },
                ignore_https_errors=True,
            )
            page: Page = await context.new_page()
            page.set_default_navigation_timeout(self.settings.navigation_timeout_ms)
            page.set_default_timeout(self.settings.page_timeout_ms)
        except Exception:
            await browser.close()
            raise

        return BrowserHandle(browser=browser, context=context, page=page)

    async def release(self, handle: BrowserHandle) -> None:
        try:
            await handle.context.close()
        finally:
            await handle.browser.close()

    async def close(self) -> None:
        async with self._lock:
            if self.playwright is not None:
                await self.playwright.stop()
                self.playwright = None


class BrowserSessionManager:
    """
    Tracks live browser sessions under a hard cap.

    Attributes:
        settings: Browser settings
        max_sessions: Maximum number of concurrently open sessions
        sessions: Open sessions keyed by id
    """

    def __init__(
        self,
        settings: Optional[BrowserSettings] = None,
        max_sessions: int = 1,
        launcher: Optional[BrowserLauncher] = None,
    ) -> None:
        """
        Initialize session manager.

        Args:
            settings: Browser settings; executable_path must already be resolved
            max_sessions: Hard cap on open sessions
            launcher: Browser capability (PlaywrightLauncher if omitted)
        """
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

        self.settings = settings or BrowserSettings()
        self.max_sessions = max_sessions
        self.launcher = launcher or PlaywrightLauncher(self.settings)
        self.sessions: Dict[str, Session] = {}
        self._reserved: Set[str] = set()
        self._shutting_down = False

        logger.debug(
            f"BrowserSessionManager initialized (max_sessions={max_sessions}, "
            f"executable={self.settings.executable_path or 'bundled'}, "
            f"headless={self.settings.headless})"
        )

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _generate_id(self) -> str:
        while True:
            session_id = f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"
            if session_id not in self.sessions and session_id not in self._reserved:
                return session_id

    def _reserve(self, session_id: Optional[str]) -> str:
        """
        Check the cap and claim an id without suspending.

        Runs to completion within one scheduler turn, so two concurrent
        creates can never both pass the cap check.
        """
        if self._shutting_down:
            raise ServiceUnavailable("BrowserSessionManager is shutting down")

        if len(self.sessions) + len(self._reserved) >= self.max_sessions:
            raise SessionLimitExceeded(self.max_sessions)

        if session_id is None:
            session_id = self._generate_id()
        elif session_id in self.sessions or session_id in self._reserved:
            raise SessionAlreadyExists(session_id)

        self._reserved.add(session_id)
        return session_id

    async def create_session(self, session_id: Optional[str] = None) -> Session:
        """
        Launch a browser and register it as a new session.

        Args:
            session_id: Caller-chosen id (generated if omitted)

        Returns:
            The new Session

        Raises:
            ServiceUnavailable: If the manager is shutting down
            SessionLimitExceeded: If the session cap is reached
            SessionAlreadyExists: If `session_id` is already open
        """
        session_id = self._reserve(session_id)
        logger.debug(f"Creating browser session: {session_id}")

        try:
            handle = await self.launcher.launch()
        except Exception as e:
            logger.error(f"Failed to create browser session {session_id}: {e}")
            raise
        finally:
            self._reserved.discard(session_id)

        if self._shutting_down:
            await self._release_quietly(session_id, handle)
            raise ServiceUnavailable("BrowserSessionManager is shutting down")

        session = Session(id=session_id, handle=handle)
        self.sessions[session_id] = session
        logger.info(f"Browser session created: {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[str]:
        return list(self.sessions.keys())

    def _require(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def navigate(
        self,
        session_id: str,
        url: str,
        wait_until: str = "domcontentloaded",
        timeout_ms: Optional[int] = None,
    ) -> None:
        """
        Navigate a session's page to `url`.

        Args:
            session_id: Session id
            url: Target URL
            wait_until: Readiness condition ("domcontentloaded", "load", "networkidle")
            timeout_ms: Navigation timeout (default: settings.navigation_timeout_ms)

        Raises:
            SessionNotFound: If the session is unknown
            NavigationTimeout: If the page did not reach `wait_until` in time;
                the session stays open
            ValueError: If `wait_until` is not a known condition, or `url` uses a
                script/data/file scheme or (unless allowed) a private address
        """
        session = self._require(session_id)
        display_url = sanitize_url_for_display(url)
        if is_dangerous_url(url, allow_private=self.settings.allow_private_network):
            raise ValueError(f"Refusing to navigate to unsafe URL: {display_url}")

        state = WAIT_CONDITIONS.get(wait_until)
        if state is None:
            raise ValueError(f"Unknown wait condition: {wait_until}")

        timeout = timeout_ms if timeout_ms is not None else self.settings.navigation_timeout_ms
        logger.debug(f"Navigating {session_id} to: {display_url}")

        try:
            await session.handle.page.goto(url, wait_until=state, timeout=timeout)
        except PlaywrightTimeoutError as e:
            logger.warning(f"Navigation timeout for {session_id} ({display_url}): {e}")
            raise NavigationTimeout(f"Navigation to {display_url} timed out after {timeout}ms") from e

    async def get_text_content(self, session_id: str) -> str:
        """Return the rendered text of the page body."""
        text = await self.evaluate(session_id, TEXT_CONTENT_SCRIPT)
        return text or ""

    async def get_content(self, session_id: str) -> str:
        """Return the page's serialized markup."""
        session = self._require(session_id)
        return await session.handle.page.content()

    async def screenshot(
        self, session_id: str, full_page: bool = False, image_format: str = "png"
    ) -> bytes:
        """
        Capture a screenshot of the session's page.

        Raises:
            SessionNotFound: If the session is unknown
            ValueError: If `image_format` is not "png" or "jpeg"
        """
        session = self._require(session_id)
        if image_format not in SCREENSHOT_FORMATS:
            raise ValueError(f"Unsupported screenshot format: {image_format}")
        return await session.handle.page.screenshot(full_page=full_page, type=image_format)

    async def evaluate(self, session_id: str, expression: str, arg: Any = None) -> Any:
        """Evaluate a JavaScript expression or function in the page."""
        session = self._require(session_id)
        return await session.handle.page.evaluate(expression, arg)

    async def _release_quietly(self, session_id: str, handle: BrowserHandle) -> None:
        try:
            await self.launcher.release(handle)
        except Exception as e:
            logger.warning(f"Error closing session {session_id}: {e}")

    async def close_session(self, session_id: str) -> None:
        """
        Close a session.

        Unknown or already-closed ids are ignored. Bookkeeping is removed
        before the browser is released, so a failing release never leaves a
        stale entry behind.
        """
        session = self.sessions.pop(session_id, None)
        if session is None:
            return

        logger.debug(f"Closing browser session: {session_id}")
        await self._release_quietly(session_id, session.handle)
        logger.info(f"Browser session closed: {session_id}")

    async def shutdown(self) -> None:
        """
        Reject new sessions and close every open one concurrently.

        Waits for all closes, failed ones included. Repeated calls are no-ops.
        """
        if self._shutting_down:
            return

        self._shutting_down = True
        logger.info(f"BrowserSessionManager shutting down ({len(self.sessions)} open sessions)")

        session_ids = list(self.sessions.keys())
        results = await asyncio.gather(
            *[self.close_session(session_id) for session_id in session_ids],
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Error closing session {session_id} during shutdown: {result}")
        self.sessions.clear()

        try:
            await self.launcher.close()
        except Exception as e:
            logger.warning(f"Error stopping browser launcher: {e}")

        logger.info("BrowserSessionManager shutdown complete")
