from __future__ import annotations

import logging
from typing import Any

import httpx

from parley.tools.base import ToolHandler

logger = logging.getLogger(__name__)

GOOGLE_URL = "https://www.googleapis.com/customsearch/v1"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"

DEFAULT_RESULTS = 5
MAX_RESULTS = 10


class WebSearchTool(ToolHandler):
    """
    Web search via Google Custom Search when credentials are configured,
    otherwise the keyless DuckDuckGo Instant Answer API.
    """

    name = "web_search"
    description = "Search the web for current information on any topic"
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to find information on the web",
            },
            "num_results": {
                "type": "integer",
                "description": "Number of search results to return (default: 5, max: 10)",
            },
        },
        "required": ["query"],
    }

    def __init__(
        self,
        google_api_key: str = "",
        google_engine_id: str = "",
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.google_api_key = google_api_key
        self.google_engine_id = google_engine_id
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def run(self, query: str = "", num_results: int = DEFAULT_RESULTS, **_: Any) -> str:
        query = (query or "").strip()
        if not query:
            return "Error: Search query cannot be empty"
        num_results = max(1, min(int(num_results), MAX_RESULTS))

        logger.debug("web_search %r (%d results)", query, num_results)
        try:
            if self.google_api_key and self.google_engine_id:
                return self._search_google(query, num_results)
            return self._search_duckduckgo(query, num_results)
        except httpx.HTTPError as e:
            return f"Error performing web search: {e}"

    def _search_google(self, query: str, num_results: int) -> str:
        response = self._client.get(GOOGLE_URL, params={
            "key": self.google_api_key,
            "cx": self.google_engine_id,
            "q": query,
            "num": num_results,
        })
        if not response.is_success:
            return f"Search API error: {response.status_code} - {response.text}"

        lines = [f"Web search results for: {query}", ""]
        items = response.json().get("items") or []
        if not items:
            lines.append("No search results found.")
        for count, item in enumerate(items[:num_results], start=1):
            lines.append(f"{count}. {item.get('title', '')}")
            lines.append(f"   URL: {item.get('link', '')}")
            lines.append(f"   Summary: {item.get('snippet', '')}")
            lines.append("")
        return "\n".join(lines).strip()

    def _search_duckduckgo(self, query: str, num_results: int) -> str:
        response = self._client.get(DUCKDUCKGO_URL, params={
            "q": query,
            "format": "json",
            "no_html": 1,
            "skip_disambig": 1,
        })
        if not response.is_success:
            return f"DuckDuckGo API error: {response.status_code}"

        data = response.json()
        lines = [f"Web search results for: {query}", ""]
        found = False

        if data.get("Abstract"):
            found = True
            lines += ["Summary:", data["Abstract"], ""]
            if data.get("AbstractURL"):
                lines += [f"Source: {data['AbstractURL']}", ""]

        count = 0
        for topic in _flatten_topics(data.get("RelatedTopics") or []):
            if count >= num_results:
                break
            count += 1
            found = True
            lines.append(f"{count}. {topic['Text']}")
            lines.append(f"   URL: {topic['FirstURL']}")
            lines.append("")

        if not found:
            lines.append(
                "No detailed search results found. Configure google_api_key and "
                "google_engine_id under [web_search] for better results."
            )
        return "\n".join(lines).strip()


def _flatten_topics(topics: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """DuckDuckGo nests grouped results under ``Topics``; pull out the leaves."""
    flat = []
    for topic in topics:
        if "Topics" in topic:
            flat.extend(_flatten_topics(topic["Topics"]))
        elif topic.get("Text") and topic.get("FirstURL"):
            flat.append(topic)
    return flat
