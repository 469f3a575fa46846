"""Interactive consent windows for the Google sign-in page.

The window only renders Google's hosted consent screen. It runs in a fresh
browser context with no bindings back into this process, and reports a
manual close so the sign-in attempt can be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)


class ConsentWindow(Protocol):
    """Surface that shows the provider consent page to the user."""

    async def open(self, url: str) -> None:
        """Show ``url`` to the user."""
        ...

    async def wait_closed(self) -> None:
        """Return once the user has closed the window."""
        ...

    async def close(self) -> None:
        """Tear the window down. Safe to call more than once."""
        ...


class PlaywrightConsentWindow:
    """Headed Chromium window driven by Playwright.

    Tries in order:
    1. System Chrome (no download needed)
    2. Playwright's bundled Chromium

    Usage:
        window = PlaywrightConsentWindow()
        await window.open(authorization_url)
        await window.wait_closed()  # returns if the user closes it
        await window.close()
    """

    TITLE = "Sign in with Google"
    WIDTH = 520
    HEIGHT = 720

    def __init__(self, channel: str | None = "chrome") -> None:
        """Initialize the consent window.

        Args:
            channel: Browser channel to try first, or None for bundled Chromium.
        """
        self.channel = channel
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._closed: asyncio.Future[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._page is not None and not self._closing

    async def open(self, url: str) -> None:
        """Launch the browser and navigate to the consent page."""
        from playwright.async_api import async_playwright

        if self._closed is not None:
            raise RuntimeError("Consent window can only be opened once")

        self._closed = asyncio.get_running_loop().create_future()
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._launch()
            # Fresh context: no cookies, storage or exposed functions shared with the app
            self._context = await self._browser.new_context(
                viewport={"width": self.WIDTH, "height": self.HEIGHT}
            )
            self._page = await self._context.new_page()

            self._page.on("close", self._on_closed)
            self._context.on("close", self._on_closed)
            self._browser.on("disconnected", self._on_closed)

            await self._page.goto(url)
        except BaseException:
            await self.close()
            raise

        logger.info("Consent window opened")

    async def _launch(self) -> Browser:
        launch_kwargs: dict[str, Any] = {
            "headless": False,
            "ignore_default_args": ["--enable-automation"],
            "args": [f"--window-size={self.WIDTH},{self.HEIGHT + 80}"],
        }

        if self.channel:
            try:
                browser = await self._playwright.chromium.launch(
                    channel=self.channel, **launch_kwargs
                )
                logger.info("Consent window using system %s", self.channel)
                return browser
            except Exception as e:
                logger.debug(f"System {self.channel} not available: {e}")

        browser = await self._playwright.chromium.launch(**launch_kwargs)
        logger.info("Consent window using Playwright Chromium")
        return browser

    def _on_closed(self, *_args: object) -> None:
        if self._closing:
            return
        if self._closed is not None and not self._closed.done():
            logger.info("Consent window closed by user")
            self._closed.set_result(None)

    async def wait_closed(self) -> None:
        if self._closed is None:
            raise RuntimeError("Consent window not opened")
        await self._closed

    async def close(self) -> None:
        """Close the browser and stop Playwright."""
        if self._closing:
            return
        # Set first so our own teardown is not reported as a user close
        self._closing = True

        if self._closed is not None and not self._closed.done():
            self._closed.cancel()

        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"Consent browser already closed: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Playwright already stopped: {e}")

        self._browser = None
        self._context = None
        self._page = None
        self._playwright = None
        logger.info("Consent window closed")


class SystemBrowserConsentWindow:
    """Opens the consent page in the user's default browser.

    A tab in the system browser cannot be watched, so ``wait_closed`` only
    returns control when the window is torn down by ``close``.
    """

    def __init__(self) -> None:
        self._closed: asyncio.Future[None] | None = None

    async def open(self, url: str) -> None:
        self._closed = asyncio.get_running_loop().create_future()
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.warning("Could not open a browser. Visit this URL to continue: %s", url)

    async def wait_closed(self) -> None:
        if self._closed is None:
            raise RuntimeError("Consent window not opened")
        await self._closed

    async def close(self) -> None:
        if self._closed is not None and not self._closed.done():
            self._closed.cancel()


CONSENT_WINDOWS: dict[str, type[PlaywrightConsentWindow] | type[SystemBrowserConsentWindow]] = {
    "playwright": PlaywrightConsentWindow,
    "system": SystemBrowserConsentWindow,
}


def create_consent_window(kind: str = "playwright") -> ConsentWindow:
    """Create a consent window by name ("playwright" or "system")."""
    if kind not in CONSENT_WINDOWS:
        raise ValueError(f"Unknown consent window: {kind}. Use one of: {list(CONSENT_WINDOWS)}")
    return CONSENT_WINDOWS[kind]()
