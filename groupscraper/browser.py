from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

from groupscraper.config import Settings
from groupscraper.models import SessionCookie

# Playwright is imported lazily when the first session is opened
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright  # type: ignore

logger = logging.getLogger(__name__)

VIEWPORT: Dict[str, int] = {"width": 1280, "height": 900}


class PageSession(Protocol):
    """The slice of a rendered browser tab the scraper relies on."""

    @property
    def url(self) -> str: ...

    async def goto(self, url: str, *, timeout_ms: int) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def content(self) -> str: ...

    async def add_cookie(self, cookie: SessionCookie) -> None: ...


class Renderer(Protocol):
    def session(self) -> AsyncContextManager[PageSession]: ...

    async def aclose(self) -> None: ...


def to_playwright_cookie(cookie: SessionCookie, fallback_url: str) -> Dict[str, Any]:
    """
    Map an exported cookie onto Playwright's add_cookies() shape.
    sameSite is dropped: exported values ("no_restriction", "unspecified") are
    not accepted by Chromium.
    """
    out: Dict[str, Any] = {"name": cookie.name, "value": cookie.value}
    if cookie.domain:
        out["domain"] = cookie.domain
        out["path"] = cookie.path or "/"
    else:
        out["url"] = fallback_url
    if cookie.expires is not None and cookie.expires > 0:
        out["expires"] = float(cookie.expires)
    if cookie.http_only is not None:
        out["httpOnly"] = bool(cookie.http_only)
    if cookie.secure is not None:
        out["secure"] = bool(cookie.secure)
    return out


class PlaywrightPage:
    """PageSession backed by one Playwright BrowserContext + Page."""

    def __init__(
        self,
        ctx: "BrowserContext",
        page: "Page",
        cookie_url: str,
        *,
        wait_until: str = "load",
    ) -> None:
        self._ctx = ctx
        self._page = page
        self._cookie_url = cookie_url
        self._wait_until = wait_until

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        await self._page.goto(url, wait_until=self._wait_until, timeout=timeout_ms)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._page.evaluate(script, arg)

    async def content(self) -> str:
        return await self._page.content()

    async def add_cookie(self, cookie: SessionCookie) -> None:
        await self._ctx.add_cookies([to_playwright_cookie(cookie, self._cookie_url)])


class PlaywrightRenderer:
    """
    Shared headless Chromium, launched on first use. Every scrape gets its own
    BrowserContext so cookies never leak between jobs.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pw: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None
        self._pw_lock = asyncio.Lock()

    async def _ensure_playwright(self) -> "Browser":
        async with self._pw_lock:
            if self._pw and self._browser:
                return self._browser

            try:
                from playwright.async_api import async_playwright  # type: ignore
            except ImportError as e:
                raise RuntimeError(
                    "Playwright is not installed. Install the package and run 'playwright install chromium'."
                ) from e

            logger.info("Launching Chromium (headless=%s)", self.settings.headless)
            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=self.settings.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"],
            )
            return self._browser

    async def aclose(self) -> None:
        async with self._pw_lock:
            if self._browser:
                try:
                    await self._browser.close()
                except Exception:
                    logger.warning("Browser close failed", exc_info=True)
            self._browser = None
            if self._pw:
                try:
                    await self._pw.stop()
                except Exception:
                    logger.warning("Playwright stop failed", exc_info=True)
            self._pw = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightPage]:
        browser = await self._ensure_playwright()
        ctx = await browser.new_context(
            user_agent=self.settings.user_agent,
            java_script_enabled=True,
            viewport=VIEWPORT,
        )
        try:
            page = await ctx.new_page()
            yield PlaywrightPage(
                ctx, page, self.settings.cookie_url, wait_until=self.settings.nav_wait_until
            )
        finally:
            try:
                await ctx.close()
            except Exception:
                logger.warning("Browser context close failed", exc_info=True)
