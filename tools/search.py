"""
Web search through a SearXNG instance.

The instance URL comes from the run's settings ("searxng_url") or the
SEARXNG_URL environment variable.
"""

import logging
import os

import httpx

from tools import ToolContext, ToolResult, tool

logger = logging.getLogger(__name__)

DEFAULT_SEARXNG_URL = "http://localhost:8888"
MAX_RESULTS = 5


@tool
async def search_web(query: str, context: ToolContext = None) -> ToolResult:
    """Search the web for current information.

    Use this for recent events, news, current data, or anything that benefits
    from up-to-date results. Cite the returned sources.

    Args:
        query: The search query
    """
    if not query.strip():
        return ToolResult(content="Error: No search query provided.")

    base_url = (
        context.settings.get("searxng_url")
        or os.environ.get("SEARXNG_URL")
        or DEFAULT_SEARXNG_URL
    ).rstrip("/")

    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.get(
                f"{base_url}/search",
                params={"q": query, "format": "json", "engines": "google,bing"},
            )
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Search failed for %r: %s", query, e)
        return ToolResult(
            content="Error: Could not search the web. The search engine might be down.",
            meta={"sources": []},
        )

    results = [
        {"title": r.get("title", ""), "url": r.get("url", ""), "content": r.get("content", "")}
        for r in (data.get("results") or [])[:MAX_RESULTS]
    ]
    if not results:
        return ToolResult(content="No results found.", meta={"sources": []})

    content = "\n---\n".join(
        f"### {r['title']}\nSource: {r['url']}\n{r['content']}\n" for r in results
    )
    return ToolResult(
        content=content,
        meta={"sources": [{"title": r["title"], "url": r["url"]} for r in results]},
    )
