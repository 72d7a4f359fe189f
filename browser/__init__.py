"""
Headless browser sessions for agent tools.
"""

from .manager import (
    BrowserManager,
    BrowserSettings,
    PageInfo,
    get_browser_manager,
    shutdown_browser_manager,
)

__all__ = [
    "BrowserManager",
    "BrowserSettings",
    "PageInfo",
    "get_browser_manager",
    "shutdown_browser_manager",
]
