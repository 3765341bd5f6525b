"""Web search through DuckDuckGo's HTML endpoint."""

import json
import logging
from html.parser import HTMLParser
from typing import Dict, List, Optional

import httpx

from .local import ToolContext

logger = logging.getLogger(__name__)

SEARCH_URL = "https://html.duckduckgo.com/html/"
MAX_RESULTS = 5
# Without a browser user agent the endpoint tends to answer 403
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

WEB_FETCH_PARAMETERS = {
    "type": "object",
    "properties": {"query": {"type": "string", "description": "Search query"}},
    "required": ["query"],
}


class _ResultParser(HTMLParser):
    """Collects title, url and snippet of each ``.result`` block."""

    def __init__(self):
        super().__init__()
        self.results: List[Dict[str, str]] = []
        self._current: Optional[Dict[str, str]] = None
        self._capture: Optional[str] = None
        self._depth = 0

    def handle_starttag(self, tag, attrs):
        attributes = dict(attrs)
        classes = (attributes.get("class") or "").split()
        if self._capture:
            self._depth += 1
            return
        if "result__a" in classes:
            self._current = {"title": "", "url": attributes.get("href") or "", "snippet": ""}
            self.results.append(self._current)
            self._capture, self._depth = "title", 0
        elif "result__snippet" in classes and self._current is not None:
            self._capture, self._depth = "snippet", 0

    def handle_endtag(self, tag):
        if not self._capture:
            return
        if self._depth:
            self._depth -= 1
        else:
            self._capture = None

    def handle_data(self, data):
        if self._capture and self._current is not None:
            self._current[self._capture] += data


def parse_results(html: str) -> List[Dict[str, str]]:
    parser = _ResultParser()
    parser.feed(html)
    results = []
    for entry in parser.results:
        title = entry["title"].strip()
        snippet = entry["snippet"].strip()
        if title and entry["url"] and snippet:
            results.append({"title": title, "url": entry["url"], "snippet": snippet})
    return results[:MAX_RESULTS]


async def search_web(query: str, http_client: Optional[httpx.AsyncClient] = None) -> List[Dict[str, str]]:
    """Top results for ``query``.

    Raises:
        httpx.HTTPStatusError: the search endpoint answered with an error status
    """
    client = http_client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await client.post(
            SEARCH_URL, data={"q": query}, headers={"User-Agent": USER_AGENT}
        )
        response.raise_for_status()
        return parse_results(response.text)
    finally:
        if http_client is None:
            await client.aclose()


async def web_fetch(args: Dict, context: ToolContext) -> str:
    query = (args.get("query") or "").strip()
    if not query:
        return "Error: query is required"
    results = await search_web(query)
    logger.info(f"Web search for '{query}' returned {len(results)} results")
    return json.dumps(results, ensure_ascii=False)
