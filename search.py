"""
search.py - Web search (Serper) and article fetch adapters.

    SerperSearch.search(query, num)   -> list[SearchHit]
    HttpArticleFetcher.fetch(url)     -> html or None (non-200)
    html_to_text(html)                -> visible text, forms/scripts removed
"""

from __future__ import annotations

import re
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from errors import MalformedOutputError, UpstreamUnavailableError, json_object
from logging_config import get_logger
from models import SearchHit

logger = get_logger(__name__)

SERVICE = "search"
SERPER_URL = "https://google.serper.dev/search"
USER_AGENT = "Mozilla/5.0 (compatible; factoring-review/1.0)"

# Tags whose text never belongs to the article body. Forms are removed so a
# search page echoing the query back does not count as a hit.
NON_CONTENT_TAGS = ("script", "style", "noscript", "form", "input", "textarea", "select", "head")


class WebSearch(Protocol):
    async def search(self, query: str, num: int = 6) -> list[SearchHit]: ...


class ArticleFetcher(Protocol):
    async def fetch(self, url: str) -> Optional[str]: ...


def _norm(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def html_to_text(html: str, max_chars: Optional[int] = None) -> str:
    """Reduce an HTML page to whitespace-normalized visible text."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(list(NON_CONTENT_TAGS)):
        tag.decompose()
    text = _norm(soup.get_text(" "))
    if max_chars is not None:
        text = text[:max_chars]
    return text


class SerperSearch:
    """WebSearch over the Serper Google Search API (Japanese locale)."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def search(self, query: str, num: int = 6) -> list[SearchHit]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    SERPER_URL,
                    headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                    json={"q": query, "num": num, "hl": "ja", "gl": "jp"},
                )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(SERVICE, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code != 200:
            raise UpstreamUnavailableError(SERVICE, f"HTTP {response.status_code} for query {query!r}")

        organic = json_object(SERVICE, response).get("organic") or []
        if not isinstance(organic, list):
            raise MalformedOutputError(SERVICE, f"organic is {type(organic).__name__}", raw=response.text[:500])
        hits = [
            SearchHit(
                title=str(item.get("title") or ""),
                url=str(item.get("link") or ""),
                snippet=str(item.get("snippet") or ""),
            )
            for item in organic
            if isinstance(item, dict) and item.get("link")
        ]
        logger.debug("search_complete | query=%r | hits=%s", query, len(hits))
        return hits[:num]


class HttpArticleFetcher:
    """ArticleFetcher over plain HTTP GET. Returns None on non-200 or transport error."""

    def __init__(
        self,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, url: str) -> Optional[str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("article_fetch_failed | url=%s | error=%s | fallback=None", url, type(exc).__name__)
            return None
        if response.status_code != 200:
            logger.warning("article_fetch_failed | url=%s | status=%s | fallback=None", url, response.status_code)
            return None
        return response.text
