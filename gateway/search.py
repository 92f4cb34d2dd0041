import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

from .cache import TTLCache
from .credentials import CredentialSource
from .schemas import DateWindow, SearchResult


logger = logging.getLogger("uvicorn.error")

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
PAGE_USER_AGENT = "Mozilla/5.0 (compatible; ChatGateway/1.0)"
PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
READABLE_CONTENT_TYPES = ("text/html", "text/plain", "application/xhtml")
SNIPPET_MAX_CHARS = 600

_NOISE_TAGS = ["script", "style", "noscript", "template", "iframe", "svg", "nav", "header", "footer", "aside"]
_PUBLISHED_KEYS = (
    "article:published_time",
    "og:article:published_time",
    "date",
    "datePublished",
    "sailthru.date",
)
_SNIPPET_DATE_RE = re.compile(r"^([A-Z][a-z]{2} \d{1,2}, \d{4})\s*[—–-]")
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def clean_text(value: Any) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub("", str(value or ""))).strip()


def trim_snippet(snippet: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    if len(snippet) <= max_chars:
        return snippet
    return f"{snippet[: max_chars - 3]}..."


def truncate_text(text: str, max_chars: int) -> str:
    """Cut at the last sentence end before ``max_chars`` when one is reasonably close."""
    if len(text) <= max_chars:
        return text
    cutoff = text.rfind(". ", 0, max_chars)
    if cutoff > max_chars * 0.5:
        return text[: cutoff + 1]
    return text[:max_chars] + "…"


def extract_page_text(html: str, max_chars: int) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for el in soup(_NOISE_TAGS):
        el.decompose()
    text = _WS_RE.sub(" ", soup.get_text(" ")).strip()
    return truncate_text(text, max_chars)


def extract_date(item: Dict[str, Any]) -> Optional[str]:
    """Publication date from page metatags, else a ``Mon D, YYYY`` snippet prefix."""
    metatags = ((item.get("pagemap") or {}).get("metatags") or [{}])[0] or {}
    published = next((metatags[key] for key in _PUBLISHED_KEYS if metatags.get(key)), None)
    if published:
        try:
            return datetime.fromisoformat(str(published).replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            pass
    match = _SNIPPET_DATE_RE.match(item.get("snippet") or "")
    if match:
        return match.group(1)
    return None


class GoogleSearchClient:
    """Google Custom Search JSON API with best-effort page excerpts.

    ``search`` never raises: a missing key, transport failure or bad status
    all come back as an empty result list and a log line.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        cache: Optional[TTLCache] = None,
        timeout: float = 15.0,
        page_timeout: float = 8.0,
        page_fetch_count: int = 4,
    ):
        self.credentials = credentials
        self.cache: TTLCache = cache or TTLCache(300.0, max_entries=100)
        self.timeout = timeout
        self.page_timeout = page_timeout
        self.page_fetch_count = page_fetch_count
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.credentials.get("GOOGLE_SEARCH_API_KEY") and self.credentials.get("GOOGLE_SEARCH_CX"))

    async def search(
        self,
        query: str,
        count: int = 8,
        date_window: Optional[DateWindow] = None,
        fetch_pages: bool = True,
        max_page_chars: int = 3000,
    ) -> List[SearchResult]:
        api_key = self.credentials.get("GOOGLE_SEARCH_API_KEY")
        cx = self.credentials.get("GOOGLE_SEARCH_CX")
        if not api_key or not cx:
            logger.warning("Google search is not configured (missing GOOGLE_SEARCH_API_KEY or GOOGLE_SEARCH_CX).")
            return []

        num = min(max(count, 1), 10)
        cache_key = (query, num, date_window.value if date_window else "")
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Search cache hit for %r", query)
            return cached

        params = {"key": api_key, "cx": cx, "q": query, "num": str(num)}
        if date_window:
            params["dateRestrict"] = date_window.value
        try:
            resp = await self.client.get(SEARCH_URL, params=params, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning("Google search request failed: %s", exc)
            return []
        if resp.status_code >= 400:
            logger.warning("Google search error %s: %s", resp.status_code, resp.text[:500])
            return []
        try:
            items = resp.json().get("items") or []
        except ValueError:
            items = []

        results: List[SearchResult] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            title = clean_text(item.get("title"))
            link = str(item.get("link") or "").strip()
            if not title or not link:
                continue
            results.append(
                SearchResult(
                    title=title,
                    link=link,
                    snippet=trim_snippet(clean_text(item.get("snippet"))),
                    date=extract_date(item),
                )
            )

        if fetch_pages and results:
            top = results[: self.page_fetch_count]
            pages = await asyncio.gather(
                *(self.fetch_page(result.link, max_page_chars) for result in top),
                return_exceptions=True,
            )
            for idx, page in enumerate(pages):
                if isinstance(page, str) and page:
                    results[idx] = results[idx].model_copy(update={"page_content": page})

        self.cache.set(cache_key, results)
        return results

    async def fetch_page(self, url: str, max_chars: int) -> str:
        try:
            resp = await self.client.get(
                url,
                headers={"User-Agent": PAGE_USER_AGENT, "Accept": PAGE_ACCEPT},
                timeout=self.page_timeout,
            )
        except httpx.HTTPError:
            return ""
        if resp.status_code >= 400:
            return ""
        content_type = resp.headers.get("content-type", "")
        if not any(kind in content_type for kind in READABLE_CONTENT_TYPES):
            return ""
        return extract_page_text(resp.text, max_chars)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
