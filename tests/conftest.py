"""Pytest configuration and shared fixtures."""

import asyncio
import io
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import pytest
from PIL import Image

from visreg.baseline.store import BaselineStore
from visreg.comparator.comparator import ScreenshotComparator
from visreg.models.baseline import Viewport
from visreg.models.changeset import (
    ChangesetContext,
    KnownRoute,
    LoginFlowDescriptor,
    RouteRecommendation,
)
from visreg.models.config import AuthConfig, FrameworkConfig


# ============================================================================
# Image Helpers
# ============================================================================


def make_png(width: int = 40, height: int = 25, color=(255, 255, 255, 255), changed_pixels: int = 0) -> bytes:
    """Build a PNG in memory, optionally with the first N pixels painted black."""
    image = Image.new("RGBA", (width, height), color)
    for i in range(changed_pixels):
        image.putpixel((i % width, i // width), (0, 0, 0, 255))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


# ============================================================================
# Capture Driver Stub
# ============================================================================


class StubPage:
    def __init__(self, session: Any):
        self.session = session
        self.url: Optional[str] = None


class StubCaptureDriver:
    """In-memory capture driver.

    ``images`` maps a route path to the PNG returned for it; unknown routes
    get ``default_image``. ``failures`` maps a route path to the exception
    raised at the ``navigate`` step and ``delays`` to seconds slept there.
    """

    def __init__(
        self,
        images: Optional[dict[str, bytes]] = None,
        default_image: Optional[bytes] = None,
        failures: Optional[dict[str, Exception]] = None,
        delays: Optional[dict[str, float]] = None,
        login_error: Optional[Exception] = None,
        login_delay: float = 0.0,
    ):
        self.images = images or {}
        self.default_image = default_image if default_image is not None else make_png()
        self.failures = failures or {}
        self.delays = delays or {}
        self.login_error = login_error
        self.login_delay = login_delay
        self.login_calls: list[LoginFlowDescriptor] = []
        self.navigated: list[str] = []
        self.sessions: dict[str, Any] = {}
        self.closed_pages = 0
        self.active = 0
        self.max_active = 0

    async def login(self, flow, username, password, viewport):
        self.login_calls.append(flow)
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        if self.login_error is not None:
            raise self.login_error
        return {"cookies": [{"name": "session", "value": username}]}

    async def new_page(self, viewport, session=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        return StubPage(session)

    async def navigate(self, page, url):
        path = urlparse(url).path or "/"
        page.url = path
        self.navigated.append(path)
        self.sessions[path] = page.session
        delay = self.delays.get(path)
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        if path in self.failures:
            raise self.failures[path]

    async def wait(self, page, wait_strategy, custom_wait=None):
        await asyncio.sleep(0)

    async def screenshot(self, page):
        return self.images.get(page.url, self.default_image)

    async def close_page(self, page):
        self.active -= 1
        self.closed_pages += 1


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def viewport() -> Viewport:
    """Create a small test viewport."""
    return Viewport(width=40, height=25)


@pytest.fixture
def auth_config() -> AuthConfig:
    """Create a test authentication configuration."""
    return AuthConfig(username="test@example.com", password="testpass123")


@pytest.fixture
def framework_config(tmp_path: Path, viewport: Viewport) -> FrameworkConfig:
    """Create a test framework configuration writing under tmp_path."""
    return FrameworkConfig(
        target_url="https://example.com",
        viewport=viewport,
        max_parallel_sessions=3,
        route_timeout_seconds=5,
        login_timeout_seconds=5,
        diff_threshold=0.01,
        baselines_dir=str(tmp_path / "baselines"),
        report_output_dir=str(tmp_path / "output"),
    )


@pytest.fixture
def login_flow() -> LoginFlowDescriptor:
    """Create a complete login flow descriptor."""
    return LoginFlowDescriptor(
        login_url="/login",
        username_selector="input[name='email']",
        password_selector="input[name='password']",
        submit_selector="button[type='submit']",
        success_indicator=".dashboard",
        success_url="/portal/dashboard",
    )


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def store(tmp_path: Path) -> BaselineStore:
    """Create a baseline store rooted in a temp directory."""
    return BaselineStore(tmp_path / "baselines")


@pytest.fixture
def comparator() -> ScreenshotComparator:
    return ScreenshotComparator()


@pytest.fixture
def stub_driver() -> StubCaptureDriver:
    return StubCaptureDriver()


# ============================================================================
# Changeset Fixtures
# ============================================================================


@pytest.fixture
def known_routes() -> tuple[KnownRoute, ...]:
    """A small route inventory with one protected route."""
    return (
        KnownRoute(path="/", source_dir="src/routes"),
        KnownRoute(path="/about", source_dir="src/routes/about"),
        KnownRoute(path="/login", source_dir="src/routes/login"),
        KnownRoute(path="/portal/dashboard", auth_protected=True,
                   source_dir="src/routes/portal/dashboard"),
    )


@pytest.fixture
def changeset(known_routes) -> ChangesetContext:
    return ChangesetContext(
        changeset_id=42,
        diff="diff --git a/src/lib/Header.svelte b/src/lib/Header.svelte\n+<h1>Hi</h1>\n",
        changed_files=("src/lib/Header.svelte",),
        known_routes=known_routes,
    )


@pytest.fixture
def public_routes() -> list[RouteRecommendation]:
    return [
        RouteRecommendation(route="/", reason="header changed", priority="high"),
        RouteRecommendation(route="/about", reason="header changed", priority="low"),
    ]


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest.fixture
def png():
    """Factory for in-memory PNG screenshots."""
    return make_png


@pytest.fixture
def driver_factory():
    """Factory for stub capture drivers with per-route behaviour."""
    return StubCaptureDriver
