"""Browser session handle over a single Playwright page.

The Flow Runner only talks to the ``BrowserSession`` protocol below, so tests
and alternative drivers can supply their own implementation through a session
factory.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from playwright.async_api import async_playwright, Browser, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from flowpilot.config import get_settings
from flowpilot.errors import LocatorNotFound

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    """Status and parsed body of a raw HTTP call made through the session."""
    status: int
    body: Any


class BrowserSession(Protocol):
    async def goto(self, url: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> None: ...

    async def text_content(self, scope: str = "body") -> str: ...

    async def is_text_visible(self, text: str) -> bool: ...

    async def request(self, method: str, url: str, body: Any = None) -> ApiResponse: ...

    async def screenshot(self) -> bytes: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[bool], Awaitable[BrowserSession]]


class PlaywrightSession:
    """One Chromium browser with one page. Never shared between runs."""

    def __init__(self, playwright: Playwright, browser: Browser, page: Page, timeout: int):
        self._playwright = playwright
        self._browser = browser
        self.page = page
        self.timeout = timeout
        self._closed = False

    @classmethod
    async def launch(cls, headless: bool = True, timeout: int | None = None) -> "PlaywrightSession":
        settings = get_settings()
        timeout = timeout or settings.browser_timeout

        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(
                headless=headless,
                args=[
                    '--no-sandbox',
                    '--disable-dev-shm-usage',
                ]
            )
            context = await browser.new_context(
                viewport={'width': 1280, 'height': 720},
                locale='en-US',
            )
            page = await context.new_page()
            page.set_default_timeout(timeout)
        except Exception:
            await playwright.stop()
            raise

        logger.debug("Launched browser session (headless=%s)", headless)
        return cls(playwright, browser, page, timeout)

    async def goto(self, url: str) -> None:
        await self.page.goto(url, wait_until='domcontentloaded')

    async def click(self, selector: str) -> None:
        try:
            await self.page.click(selector)
        except PlaywrightTimeoutError as e:
            raise LocatorNotFound(f"Timeout waiting for selector '{selector}': {e}", selector) from e

    async def fill(self, selector: str, value: str) -> None:
        try:
            await self.page.fill(selector, value)
        except PlaywrightTimeoutError as e:
            raise LocatorNotFound(f"Timeout waiting for selector '{selector}': {e}", selector) from e

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> None:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout or self.timeout)
        except PlaywrightTimeoutError as e:
            raise LocatorNotFound(f"Timeout waiting for selector '{selector}': {e}", selector) from e

    async def text_content(self, scope: str = "body") -> str:
        return await self.page.inner_text(scope) or ""

    async def is_text_visible(self, text: str) -> bool:
        locator = self.page.get_by_text(text, exact=False).first
        return await locator.is_visible()

    async def request(self, method: str, url: str, body: Any = None) -> ApiResponse:
        kwargs: dict[str, Any] = {"method": method}
        if body is not None:
            kwargs["data"] = body
        response = await self.page.request.fetch(url, **kwargs)
        try:
            parsed = await response.json()
        except Exception:
            parsed = await response.text()
        return ApiResponse(status=response.status, body=parsed)

    async def screenshot(self) -> bytes:
        return await self.page.screenshot(full_page=True, type='png')

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()
        logger.debug("Browser session closed")


async def launch_session(headless: bool = True) -> BrowserSession:
    """Default session factory used by the Flow Runner."""
    return await PlaywrightSession.launch(headless=headless)
