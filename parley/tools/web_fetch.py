from __future__ import annotations

import json
import logging
import re
from html.parser import HTMLParser
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from parley.tools.base import ToolHandler

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 10_000
MAX_LENGTH = 50_000
TRUNCATION_MARK = "... [Content truncated]"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class WebFetchTool(ToolHandler):
    name = "web_fetch"
    description = (
        "Fetch a webpage and convert it to clean, readable text format "
        "with basic markdown-like formatting"
    )
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "The URL of the webpage to fetch and convert to readable text",
            },
            "include_links": {
                "type": "boolean",
                "description": "Whether to include link references in the output (default: true)",
            },
            "max_length": {
                "type": "integer",
                "description": "Maximum length of the extracted text in characters (default: 10000, max: 50000)",
            },
        },
        "required": ["url"],
    }

    def __init__(self, client: httpx.Client | None = None, timeout: float = 30.0) -> None:
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": BROWSER_USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def run(
        self,
        url: str = "",
        include_links: bool = True,
        max_length: int = DEFAULT_MAX_LENGTH,
        **_: Any,
    ) -> str:
        url = (url or "").strip()
        if not url:
            return "Error: URL cannot be empty"
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return "Error: Invalid URL format. Please provide a valid HTTP or HTTPS URL."
        max_length = max(1, min(int(max_length), MAX_LENGTH))

        logger.debug("web_fetch %s", url)
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.TimeoutException:
            return "Error: Request timed out. The webpage took too long to respond."
        except httpx.HTTPError as e:
            return f"Error fetching webpage: {e}. Please check if the URL is accessible."

        content_type = response.headers.get("content-type", "").lower()
        body = response.text
        if "application/json" in content_type or _looks_like_json(body):
            text = format_json(body)
        elif content_type.startswith("text/") and "text/html" not in content_type:
            text = "Content Type: Plain Text\n==========================\n\n" + body
        else:
            text = html_to_text(body, include_links=include_links, base_url=str(response.url))
        return truncate(text, max_length)


def truncate(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[:max_length] + TRUNCATION_MARK
    return text


def format_json(body: str) -> str:
    header = "Content Type: JSON\n===================\n\n"
    try:
        return header + json.dumps(json.loads(body), indent=2, ensure_ascii=False)
    except ValueError:
        return header + "Raw JSON Content:\n" + body


def _looks_like_json(body: str) -> bool:
    stripped = body.strip()
    return (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    )


_SKIP_TAGS = {"script", "style", "noscript", "template", "svg", "head", "iframe"}
_BLOCK_TAGS = {
    "p", "div", "section", "article", "main", "header", "footer", "nav", "aside",
    "table", "tr", "ul", "ol", "blockquote", "pre", "form", "figure", "br", "hr",
}
_HEADINGS = {"h1": "#", "h2": "##", "h3": "###", "h4": "####", "h5": "#####", "h6": "######"}


class _TextExtractor(HTMLParser):
    def __init__(self, include_links: bool, base_url: str) -> None:
        super().__init__(convert_charrefs=True)
        self.include_links = include_links
        self.base_url = base_url
        self.parts: list[str] = []
        self.links: list[str] = []
        self._skip_depth = 0
        self._href: str | None = None
        self.title = ""
        self._in_title = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "title":
            self._in_title = True
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth:
            return
        if tag in _HEADINGS:
            self.parts.append(f"\n\n{_HEADINGS[tag]} ")
        elif tag == "li":
            self.parts.append("\n- ")
        elif tag in ("td", "th"):
            self.parts.append(" | ")
        elif tag in _BLOCK_TAGS:
            self.parts.append("\n")
        elif tag == "a":
            href = dict(attrs).get("href")
            if href and not href.startswith(("#", "javascript:", "mailto:")):
                self._href = urljoin(self.base_url, href)

    def handle_endtag(self, tag: str) -> None:
        if tag == "title":
            self._in_title = False
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth:
            return
        if tag in _HEADINGS or tag in _BLOCK_TAGS:
            self.parts.append("\n")
        elif tag == "a" and self._href:
            if self.include_links:
                self.links.append(self._href)
                self.parts.append(f" [{len(self.links)}]")
            self._href = None

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self.title += data
        if self._skip_depth:
            return
        self.parts.append(re.sub(r"\s+", " ", data))


def html_to_text(html: str, include_links: bool = True, base_url: str = "") -> str:
    """Rough HTML → text: drops scripts and styles, keeps headings, list items and link references."""
    parser = _TextExtractor(include_links, base_url)
    parser.feed(html)
    parser.close()

    text = clean_text("".join(parser.parts))
    title = parser.title.strip()
    if title and not text.startswith(title):
        text = f"# {title}\n\n{text}"
    if include_links and parser.links:
        refs = "\n".join(f"[{i}] {link}" for i, link in enumerate(parser.links, start=1))
        text = f"{text}\n\nLinks:\n{refs}"
    return text


def clean_text(content: str) -> str:
    """Trim lines and collapse runs of blank lines to one."""
    lines: list[str] = []
    previous_empty = False
    for line in content.split("\n"):
        line = line.strip()
        if not line:
            if not previous_empty:
                lines.append("")
                previous_empty = True
            continue
        lines.append(line)
        previous_empty = False
    return "\n".join(lines).strip()
