"""
Shared headless browser for agent tools.

One Chromium process is launched lazily and shared by every session; each
logical session id (normally one per agent run) gets its own browser context,
so cookies and viewport state never leak between runs. An idle reaper closes
sessions that have not been used for a while, and closes the browser itself
once no sessions remain.

Usage:
    manager = get_browser_manager()
    page = await manager.get_page("run-123")
    await page.goto("https://example.com")
    text = await manager.get_page_text("run-123")
    await manager.close_page("run-123")
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from playwright.async_api import async_playwright

from config import get_section

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]
VIEWPORT = {"width": 1280, "height": 720}
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
MAX_LINKS = 30
MAX_LINK_TEXT = 100

_PAGE_TEXT_JS = """
() => {
    const body = document.body;
    if (!body) return '';
    const clone = body.cloneNode(true);
    clone.querySelectorAll('script, style, noscript, svg').forEach((el) => el.remove());
    const raw = clone.innerText || clone.textContent || '';
    return raw.split('\\n').map((l) => l.trim()).filter((l) => l.length > 0).join('\\n');
}
"""

_PAGE_LINKS_JS = """
(limits) => Array.from(document.querySelectorAll('a[href]'))
    .map((a) => ({ text: (a.textContent || '').trim().substring(0, limits.text), href: a.href }))
    .filter((l) => l.text && l.href && l.href.startsWith('http'))
    .slice(0, limits.count)
"""


@dataclass
class BrowserSettings:
    headless: bool = True
    idle_timeout_seconds: float = 300
    reap_interval_seconds: float = 60
    max_text_chars: int = 8000

    @classmethod
    def from_config(cls, config: dict) -> "BrowserSettings":
        section = get_section(config, "browser")
        return cls(**{k: v for k, v in section.items() if k in cls.__dataclass_fields__})


@dataclass
class PageInfo:
    title: str
    url: str
    links: list[dict] = field(default_factory=list)


@dataclass
class BrowserSession:
    context: Any
    page: Any
    last_used: float


Launcher = Callable[[BrowserSettings], Awaitable[tuple[Any, Any]]]


async def launch_chromium(settings: BrowserSettings) -> tuple[Any, Any]:
    """Start Playwright and launch headless Chromium. Returns (playwright, browser)."""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(headless=settings.headless, args=CHROMIUM_ARGS)
    except Exception:
        await playwright.stop()
        raise
    return playwright, browser


class BrowserManager:
    """One shared browser process, one context + page per session id."""

    def __init__(self, settings: BrowserSettings = None, launcher: Launcher = launch_chromium,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or BrowserSettings()
        self._launcher = launcher
        self._clock = clock
        self._playwright = None
        self._browser = None
        self._sessions: dict[str, BrowserSession] = {}
        self._lock = asyncio.Lock()
        self._reaper: asyncio.Task | None = None

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    async def _discard_disconnected(self):
        """Forget every session of a browser that died. Caller holds the lock."""
        if self._browser is None or self._browser.is_connected():
            return
        logger.warning("Browser disconnected, dropping %d session(s)", len(self._sessions))
        for sid in list(self._sessions):
            await self.close_page(sid)
        await self._close_browser()

    async def _get_browser(self):
        """Launch the shared browser if needed. Caller holds the lock."""
        await self._discard_disconnected()
        if self._browser is not None:
            return self._browser

        logger.info("Launching headless Chromium")
        self._playwright, self._browser = await self._launcher(self.settings)

        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())
        return self._browser

    async def get_page(self, session_id: str = "default"):
        """Page for session_id, creating the session or reopening a closed page."""
        async with self._lock:
            await self._discard_disconnected()
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_used = self._clock()
                if not session.page.is_closed():
                    return session.page
                session.page = await session.context.new_page()
                return session.page

            browser = await self._get_browser()
            context = await browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
            page = await context.new_page()
            self._sessions[session_id] = BrowserSession(context, page, self._clock())
            logger.debug("Opened browser session %s", session_id)
            return page

    async def close_page(self, session_id: str) -> bool:
        """Close one session. Returns False if it did not exist."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            await session.context.close()
        except Exception as e:
            logger.debug("Closing context for %s failed: %s", session_id, e)
        return True

    async def screenshot(self, session_id: str = "default") -> str:
        """Viewport screenshot of the session's page as base64 PNG."""
        page = await self.get_page(session_id)
        data = await page.screenshot(type="png", full_page=False)
        return base64.b64encode(data).decode("ascii")

    async def get_page_text(self, session_id: str = "default") -> str:
        """Readable text of the page without script/style/noscript/svg, capped in length."""
        page = await self.get_page(session_id)
        text = await page.evaluate(_PAGE_TEXT_JS) or ""
        return text[:self.settings.max_text_chars]

    async def get_page_info(self, session_id: str = "default") -> PageInfo:
        page = await self.get_page(session_id)
        title = await page.title()
        links = await page.evaluate(_PAGE_LINKS_JS, {"text": MAX_LINK_TEXT, "count": MAX_LINKS})
        return PageInfo(title=title, url=page.url, links=list(links or [])[:MAX_LINKS])

    # -------------------------------------------------------------------------
    # Idle cleanup
    # -------------------------------------------------------------------------

    async def reap_idle(self) -> list[str]:
        """Close sessions idle past the timeout; close the browser when none remain."""
        now = self._clock()
        idle = [
            sid for sid, s in self._sessions.items()
            if now - s.last_used > self.settings.idle_timeout_seconds
        ]
        for sid in idle:
            logger.info("Closing idle browser session %s", sid)
            await self.close_page(sid)

        if not self._sessions and self._browser is not None:
            logger.info("No browser sessions left, closing browser")
            await self._close_browser()
        return idle

    async def _reap_loop(self):
        while True:
            await asyncio.sleep(self.settings.reap_interval_seconds)
            try:
                async with self._lock:
                    await self.reap_idle()
            except Exception as e:
                logger.warning("Browser idle cleanup failed: %s", e)
            if self._browser is None:
                return

    async def _close_browser(self):
        browser, playwright = self._browser, self._playwright
        self._browser = self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug("Browser close failed: %s", e)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug("Playwright stop failed: %s", e)

    async def shutdown(self):
        """Close every session and the browser, and stop the reaper."""
        if self._reaper is not None and self._reaper is not asyncio.current_task():
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
        self._reaper = None
        for sid in list(self._sessions):
            await self.close_page(sid)
        await self._close_browser()


# Process-wide instance, kept across importlib.reload of this module
_instances: dict = globals().get("_instances") or {}
_SLOT = "browser_manager"


def get_browser_manager(settings: BrowserSettings = None) -> BrowserManager:
    """The shared BrowserManager, created on first use."""
    manager = _instances.get(_SLOT)
    if manager is None:
        manager = _instances[_SLOT] = BrowserManager(settings)
    return manager


async def shutdown_browser_manager():
    manager = _instances.pop(_SLOT, None)
    if manager is not None:
        await manager.shutdown()
