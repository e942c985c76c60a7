"""Browser capture capability used by the execution coordinator."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from visreg.errors import NavigationError
from visreg.models.baseline import Viewport
from visreg.models.changeset import LoginFlowDescriptor

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)


class CaptureDriver(Protocol):
    """Steps the coordinator drives for each route.

    ``login`` returns an opaque session handle that is passed back to
    ``new_page`` for authenticated routes.
    """

    async def login(self, flow: LoginFlowDescriptor, username: str, password: str,
                    viewport: Viewport) -> Any: ...
    async def new_page(self, viewport: Viewport, session: Any = None) -> Any: ...
    async def navigate(self, page: Any, url: str) -> None: ...
    async def wait(self, page: Any, wait_strategy: str, custom_wait: str | None = None) -> None: ...
    async def screenshot(self, page: Any) -> bytes: ...
    async def close_page(self, page: Any) -> None: ...


async def launch_browser(playwright: Playwright, headless: bool = True) -> Browser:
    """Launch Chromium without the automation-controlled blink feature."""
    return await playwright.chromium.launch(
        headless=headless,
        args=["--disable-blink-features=AutomationControlled"],
    )


class PlaywrightCaptureDriver:
    """Playwright realization of the capture capability.

    Each page gets its own browser context so concurrent routes never share
    cookies or storage, except for the storage state captured at login.
    Locale and timezone are pinned so screenshots render the same across runs.
    """

    def __init__(
        self,
        headless: bool = True,
        user_agent: Optional[str] = None,
        timeout_ms: int = 30000,
        full_page: bool = True,
    ):
        self.headless = headless
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.timeout_ms = timeout_ms
        self.full_page = full_page
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    async def start(self) -> None:
        logger.debug("Launching Chromium for capture...")
        self._playwright = await async_playwright().start()
        self._browser = await launch_browser(self._playwright, headless=self.headless)

    async def stop(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightCaptureDriver":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _new_context(self, viewport: Viewport, storage_state: dict | None = None) -> BrowserContext:
        if self._browser is None:
            raise RuntimeError("Capture driver not started")
        return await self._browser.new_context(
            viewport=viewport.as_dict(),
            user_agent=self.user_agent,
            locale="en-US",
            timezone_id="UTC",
            storage_state=storage_state,
        )

    async def login(
        self,
        flow: LoginFlowDescriptor,
        username: str,
        password: str,
        viewport: Viewport,
    ) -> dict:
        """Fill and submit the login form, returning the resulting storage state."""
        context = await self._new_context(viewport)
        try:
            page = await context.new_page()
            logger.info("Login: navigating to %s", flow.login_url)
            await page.goto(flow.login_url, wait_until="networkidle", timeout=self.timeout_ms)
            await page.fill(flow.username_selector, username)
            await page.fill(flow.password_selector, password)
            await page.click(flow.submit_selector)

            logger.debug("Login: waiting for success indicator %s", flow.success_indicator)
            await page.wait_for_selector(flow.success_indicator, timeout=self.timeout_ms)
            if flow.success_url:
                expected = urlparse(flow.success_url).path.rstrip("/") or "/"
                await page.wait_for_url(
                    lambda url: (urlparse(url).path.rstrip("/") or "/") == expected,
                    timeout=self.timeout_ms,
                )

            state = await context.storage_state()
            logger.info("Login: captured session state (%d cookies)", len(state.get("cookies", [])))
            return state
        finally:
            await context.close()

    async def new_page(self, viewport: Viewport, session: Any = None) -> Page:
        context = await self._new_context(viewport, storage_state=session)
        try:
            return await context.new_page()
        except BaseException:
            await context.close()
            raise

    async def navigate(self, page: Page, url: str) -> None:
        response = await page.goto(url, wait_until="commit", timeout=self.timeout_ms)
        if response is not None and response.status >= 400:
            raise NavigationError(f"{url} responded with HTTP {response.status}")

    async def wait(self, page: Page, wait_strategy: str, custom_wait: str | None = None) -> None:
        if wait_strategy == "custom":
            await page.wait_for_function(custom_wait, timeout=self.timeout_ms)
        else:
            await page.wait_for_load_state(wait_strategy, timeout=self.timeout_ms)

    async def screenshot(self, page: Page) -> bytes:
        return await page.screenshot(full_page=self.full_page, type="png", animations="disabled")

    async def close_page(self, page: Page) -> None:
        context = page.context
        await page.close()
        await context.close()
