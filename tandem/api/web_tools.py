"""web_search tool backed by the Brave Search API.

Uses its own httpx client, separate from the provider client that carries
Anthropic credentials.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from tandem.api.tools import ToolDispatcher, mcp_response
from tandem.config import Settings

logger = logging.getLogger(__name__)

_BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
_FRESHNESS = {"day": "pd", "week": "pw", "month": "pm"}


class DailyRateLimiter:
    """Counts calls per calendar day (in memory, resets on restart)."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._date = ""
        self._count = 0

    def check(self) -> str | None:
        """Consume one call. Returns an error message if the limit is reached."""
        today = time.strftime("%Y-%m-%d")
        if self._date != today:
            self._date = today
            self._count = 0

        if self._count >= self.limit:
            return f"Daily web search limit reached ({self.limit}). Resets tomorrow."

        self._count += 1
        if self._count > int(self.limit * 0.8):
            logger.warning("Web search rate limit at %d/%d", self._count, self.limit)
        return None


async def web_search_tool(
    query: str,
    count: int = 5,
    freshness: str | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
    _limiter: DailyRateLimiter,
) -> dict[str, Any]:
    """Query Brave and format the hits as numbered text."""
    if not _settings.brave_search_api_key:
        return mcp_response(
            "Error: BRAVE_SEARCH_API_KEY not configured. Set this environment variable to enable web search.",
            is_error=True,
        )

    rate_error = _limiter.check()
    if rate_error:
        return mcp_response(f"Rate limit: {rate_error}", is_error=True)

    count = min(count, 10)
    params: dict[str, Any] = {"q": query, "count": count}
    if freshness in _FRESHNESS:
        params["freshness"] = _FRESHNESS[freshness]

    try:
        response = await _http.get(
            _BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "Accept-Encoding": "gzip",
                "X-Subscription-Token": _settings.brave_search_api_key,
            },
            timeout=10,
        )
    except httpx.TimeoutException:
        return mcp_response("Web search timed out. Try again.", is_error=True)
    except httpx.HTTPError as e:
        return mcp_response(f"Could not connect to search service: {e}", is_error=True)

    if response.status_code != 200:
        return mcp_response(
            f"Search failed (HTTP {response.status_code}). Check BRAVE_SEARCH_API_KEY if 401.",
            is_error=True,
        )

    items = response.json().get("web", {}).get("results", [])[:count]
    if not items:
        return mcp_response(f"No results found for: {query}")

    lines = [f"Search results for: {query}\n"]
    for i, item in enumerate(items, 1):
        lines.append(f"{i}. {item.get('title', '')}")
        lines.append(f"   URL: {item.get('url', '')}")
        lines.append(f"   {item.get('description', '')}\n")
    return mcp_response("\n".join(lines))


WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search the web (Brave). Returns numbered results with title, URL and snippet.",
    "properties": {
        "query": {"type": "string", "description": "What to search for"},
        "count": {
            "type": "integer",
            "description": "How many results to return, 1 to 10",
            "minimum": 1,
            "maximum": 10,
        },
        "freshness": {
            "type": "string",
            "description": "Only results from the last day, week or month",
            "enum": ["day", "week", "month"],
        },
    },
    "required": ["query"],
    "additionalProperties": False,
}


def register_web_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register web_search, binding settings, the client and a rate limiter."""
    limiter = DailyRateLimiter(settings.web_search_daily_limit)

    async def _search(query: str, count: int = 5, freshness: str | None = None) -> dict[str, Any]:
        return await web_search_tool(
            query, count, freshness, _settings=settings, _http=http_client, _limiter=limiter
        )

    dispatcher.register("web_search", _search, WEB_SEARCH_SCHEMA)
