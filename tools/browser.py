"""
Browser tools: navigate, act on, read and screenshot web pages.

Every tool works on the page of the current run's browser session
(ToolContext.session_id). Failures are returned as text, with a screenshot
of the page when one can still be taken.
"""

import logging
import re

from browser import BrowserManager, get_browser_manager
from tools import ToolContext, ToolImage, ToolResult, tool

logger = logging.getLogger(__name__)

ACTION_TIMEOUT_MS = 10_000
NAVIGATION_TIMEOUT_MS = 15_000
MAX_WAIT_MS = 10_000


def _manager(context: ToolContext) -> BrowserManager:
    return context.browser or get_browser_manager()


def _screenshot_result(content: str, info, shot: str) -> ToolResult:
    return ToolResult(
        content=content,
        images=[ToolImage("image/png", shot)],
        meta={"sources": [{"title": info.title, "url": info.url}]},
    )


def _links_markdown(links: list[dict], limit: int) -> str:
    return "\n".join(f"- [{l['text']}]({l['href']})" for l in links[:limit])


@tool
async def browse_url(url: str, context: ToolContext = None) -> ToolResult:
    """Navigate to a URL in a browser and return the page text, links and a screenshot.

    Use this to visit websites, read articles or start a browsing session.

    Args:
        url: The full URL to navigate to (e.g. "https://example.com")
    """
    if not url.strip():
        return ToolResult(content="Error: No URL provided.")
    full_url = url if url.startswith("http") else f"https://{url}"
    manager = _manager(context)
    sid = context.session_id

    try:
        page = await manager.get_page(sid)
        await page.goto(full_url, wait_until="domcontentloaded", timeout=30_000)
        await page.wait_for_timeout(1500)

        info = await manager.get_page_info(sid)
        text = await manager.get_page_text(sid)
        shot = await manager.screenshot(sid)
    except Exception as e:
        logger.warning("Browse error for %s: %s", full_url, e)
        return ToolResult(content=f"Error navigating to {full_url}: {e}")

    content = (
        f"## Page: {info.title}\nURL: {info.url}\n\n### Content\n{text}\n\n"
        f"### Links on Page\n{_links_markdown(info.links, 15)}"
    )
    return _screenshot_result(content, info, shot)


async def _perform(page, action: str, value: str | None) -> bool:
    """Carry out one free-text action. Returns False when it is not understood."""
    lowered = action.lower()

    if lowered.startswith("click"):
        target = re.sub(r"^click\s+(on\s+)?", "", action, flags=re.I).strip()
        if target.startswith("//") or target.startswith("xpath="):
            xpath = target.replace("xpath=", "", 1)
            await page.locator(f"xpath={xpath}").first.click(timeout=ACTION_TIMEOUT_MS)
            return True
        try:
            await (
                page.get_by_role("link", name=target)
                .or_(page.get_by_role("button", name=target))
                .or_(page.get_by_text(target, exact=False))
                .first.click(timeout=ACTION_TIMEOUT_MS)
            )
        except Exception:
            await page.locator(target).first.click(timeout=ACTION_TIMEOUT_MS)
        return True

    if lowered.startswith("type") or lowered.startswith("fill"):
        target = re.sub(r"^(type|fill)\s+(in(to)?\s+)?", "", action, flags=re.I).strip()
        try:
            await (
                page.get_by_placeholder(target)
                .or_(page.get_by_label(target))
                .first.fill(value or "", timeout=ACTION_TIMEOUT_MS)
            )
        except Exception:
            await page.locator(target).first.fill(value or "", timeout=ACTION_TIMEOUT_MS)
        return True

    scrolls = {
        "scroll down": "window.scrollBy(0, window.innerHeight)",
        "scroll up": "window.scrollBy(0, -window.innerHeight)",
        "scroll to top": "window.scrollTo(0, 0)",
        "scroll to bottom": "window.scrollTo(0, document.body.scrollHeight)",
    }
    for prefix, script in scrolls.items():
        if lowered.startswith(prefix):
            await page.evaluate(f"() => {script}")
            return True

    if lowered.startswith(("go back", "back")):
        await page.go_back(wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
    elif lowered.startswith(("go forward", "forward")):
        await page.go_forward(wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
    elif lowered.startswith(("reload", "refresh")):
        await page.reload(wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
    elif lowered.startswith(("press", "key")):
        key = re.sub(r"^(press|key)\s+", "", action, flags=re.I).strip()
        await page.keyboard.press(key)
    elif lowered.startswith("wait"):
        digits = re.sub(r"\D", "", action)
        ms = int(digits) if digits else 2000
        await page.wait_for_timeout(min(ms, MAX_WAIT_MS))
    elif lowered.startswith(("select", "choose")):
        rest = re.sub(r"^(select|choose)\s+", "", action, flags=re.I).strip()
        match = re.match(r"(.+?)\s+from\s+(.+)", rest, flags=re.I)
        if not match:
            return False
        option, selector = match.group(1).strip(), match.group(2).strip()
        try:
            await page.get_by_label(selector).first.select_option(label=option)
        except Exception:
            await page.locator(selector).first.select_option(label=option)
    else:
        try:
            await page.get_by_text(action, exact=False).first.click(timeout=ACTION_TIMEOUT_MS)
        except Exception:
            return False
    return True


@tool
async def browser_act(action: str, value: str | None = None, context: ToolContext = None) -> ToolResult:
    """Perform an action on the current browser page and return a screenshot of the result.

    Supported actions: click [target], type [target] (with value), fill [target],
    scroll down/up/to top/to bottom, go back, go forward, reload, press [key],
    wait [ms], select [option] from [select]. Use browse_url first.

    Args:
        action: The action, e.g. "click Sign In", "type search box", "press Enter"
        value: Text to type for type/fill actions
    """
    if not action.strip():
        return ToolResult(content="Error: No action specified.")
    manager = _manager(context)
    sid = context.session_id

    try:
        page = await manager.get_page(sid)
        if not await _perform(page, action, value):
            return ToolResult(
                content=(
                    f'Could not perform action: "{action}". Try being more specific or use commands '
                    "like: click [target], type [target] (with value), scroll down/up, go back, press [key]."
                )
            )
        await page.wait_for_timeout(1000)
        info = await manager.get_page_info(sid)
        shot = await manager.screenshot(sid)
    except Exception as e:
        logger.warning("Browser action %r failed: %s", action, e)
        try:
            shot = await manager.screenshot(sid)
        except Exception:
            return ToolResult(content=f'Action failed: "{action}": {e}')
        return ToolResult(
            content=f'Action failed: "{action}": {e}\nHere is what the page looks like:',
            images=[ToolImage("image/png", shot)],
        )

    return _screenshot_result(
        f'Action performed: "{action}"\nCurrent page: {info.title} ({info.url})', info, shot
    )


@tool
async def browser_extract(instruction: str, context: ToolContext = None) -> ToolResult:
    """Return the full text, links and a screenshot of the current page for a given extraction goal.

    Args:
        instruction: What to extract, e.g. "list the main headlines"
    """
    manager = _manager(context)
    sid = context.session_id
    try:
        text = await manager.get_page_text(sid)
        info = await manager.get_page_info(sid)
        shot = await manager.screenshot(sid)
    except Exception as e:
        return ToolResult(content=f"Error extracting from page: {e}")

    content = (
        f"## Extraction from: {info.title}\nURL: {info.url}\nInstruction: {instruction}\n\n"
        f"### Full Page Text\n{text}\n\n### All Links\n{_links_markdown(info.links, 20)}"
    )
    return _screenshot_result(content, info, shot)


@tool
async def browser_screenshot(context: ToolContext = None) -> ToolResult:
    """Take a screenshot of the current browser page without acting on it."""
    manager = _manager(context)
    sid = context.session_id
    try:
        info = await manager.get_page_info(sid)
        shot = await manager.screenshot(sid)
    except Exception as e:
        return ToolResult(content=f"Error taking screenshot: {e}")
    return _screenshot_result(f"Screenshot of: {info.title} ({info.url})", info, shot)


@tool
async def browser_close(context: ToolContext = None) -> str:
    """Close the current browser session and free its resources."""
    await _manager(context).close_page(context.session_id)
    return "Browser session closed."
