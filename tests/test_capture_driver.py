"""Tests for the Playwright capture driver."""

from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from playwright.async_api import Browser, BrowserContext, Page

from visreg.errors import ErrorKind, VisualRegressionError
from visreg.executor.capture import PlaywrightCaptureDriver, launch_browser
from visreg.models.baseline import Viewport


def _driver_with_browser():
    page = AsyncMock(spec=Page)
    context = AsyncMock(spec=BrowserContext)
    context.new_page.return_value = page
    context.storage_state.return_value = {"cookies": [{"name": "sid"}], "origins": []}
    page.context = context
    browser = AsyncMock(spec=Browser)
    browser.new_context.return_value = context

    driver = PlaywrightCaptureDriver(timeout_ms=5000)
    driver._browser = browser
    return driver, browser, context, page


class TestLaunch:
    @pytest.mark.asyncio
    async def test_launch_disables_automation_flag(self):
        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock()

        await launch_browser(playwright, headless=True)

        kwargs = playwright.chromium.launch.call_args.kwargs
        assert kwargs["headless"] is True
        assert "--disable-blink-features=AutomationControlled" in kwargs["args"]

    @pytest.mark.asyncio
    async def test_new_page_requires_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            await PlaywrightCaptureDriver().new_page(Viewport())


class TestPages:
    """Tests for page creation, navigation and capture."""

    @pytest.mark.asyncio
    async def test_new_page_uses_isolated_pinned_context(self):
        """Test each page gets its own context with viewport, locale and session."""
        driver, browser, context, page = _driver_with_browser()
        session = {"cookies": []}

        result = await driver.new_page(Viewport(width=375, height=812), session)

        assert result is page
        kwargs = browser.new_context.call_args.kwargs
        assert kwargs["viewport"] == {"width": 375, "height": 812}
        assert kwargs["locale"] == "en-US"
        assert kwargs["timezone_id"] == "UTC"
        assert kwargs["storage_state"] is session

    @pytest.mark.asyncio
    async def test_new_page_failure_closes_context(self):
        """Test a context is not leaked when opening its page fails."""
        driver, _, context, _ = _driver_with_browser()
        context.new_page.side_effect = RuntimeError("target closed")

        with pytest.raises(RuntimeError, match="target closed"):
            await driver.new_page(Viewport())
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_navigate_error_status(self):
        """Test HTTP error responses are navigation errors."""
        driver, _, _, page = _driver_with_browser()
        page.goto.return_value = Mock(status=404)

        with pytest.raises(VisualRegressionError) as exc_info:
            await driver.navigate(page, "https://example.com/missing")
        assert exc_info.value.kind == ErrorKind.NAVIGATION
        assert "404" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_navigate_ok(self):
        driver, _, _, page = _driver_with_browser()
        page.goto.return_value = Mock(status=200)

        await driver.navigate(page, "https://example.com/")
        page.goto.assert_awaited_once_with("https://example.com/", wait_until="commit", timeout=5000)

    @pytest.mark.asyncio
    async def test_wait_strategies(self):
        driver, _, _, page = _driver_with_browser()

        await driver.wait(page, "networkidle")
        page.wait_for_load_state.assert_awaited_once_with("networkidle", timeout=5000)

        await driver.wait(page, "custom", "window.appReady === true")
        page.wait_for_function.assert_awaited_once_with("window.appReady === true", timeout=5000)

    @pytest.mark.asyncio
    async def test_screenshot_and_close(self):
        driver, _, context, page = _driver_with_browser()
        page.screenshot.return_value = b"png-bytes"

        assert await driver.screenshot(page) == b"png-bytes"
        assert page.screenshot.call_args.kwargs["full_page"] is True
        assert page.screenshot.call_args.kwargs["animations"] == "disabled"

        await driver.close_page(page)
        page.close.assert_awaited_once()
        context.close.assert_awaited_once()


class TestLogin:
    """Tests for the login step."""

    @pytest.mark.asyncio
    async def test_login_fills_form_and_returns_storage_state(self, login_flow):
        driver, _, context, page = _driver_with_browser()
        flow = login_flow.model_copy(update={
            "login_url": "https://example.com/login", "success_url": None,
        })

        state = await driver.login(flow, "user@example.com", "secret", Viewport())

        assert state["cookies"] == [{"name": "sid"}]
        page.fill.assert_any_await("input[name='email']", "user@example.com")
        page.fill.assert_any_await("input[name='password']", "secret")
        page.click.assert_awaited_once_with("button[type='submit']")
        page.wait_for_selector.assert_awaited_once_with(".dashboard", timeout=5000)
        page.wait_for_url.assert_not_awaited()
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_login_closes_context_on_failure(self, login_flow):
        driver, _, context, page = _driver_with_browser()
        page.wait_for_selector.side_effect = TimeoutError("indicator not found")

        with pytest.raises(TimeoutError):
            await driver.login(login_flow, "user", "secret", Viewport())
        context.close.assert_awaited_once()
