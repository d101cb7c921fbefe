import asyncio
import logging
import re
from typing import Protocol
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field


logger = logging.getLogger("codeforge.crawl")

URL_PATTERN = re.compile(r"https?://[^\s\])\"'<>]+")
MAX_URLS = 2
CRAWL_TIMEOUT_S = 8.0
MAX_CONTENT_CHARS = 8_000
MAX_SCREENSHOTS = 20

_HOST_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$", re.IGNORECASE)


class CrawledContent(BaseModel):
    url: str
    content: str
    screenshots: list[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""
    content: str | None = None


class Crawler(Protocol):
    async def crawl(self, url: str) -> CrawledContent | None: ...


class SearchProvider(Protocol):
    async def search(self, query: str) -> list[SearchResult]: ...


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    host = parsed.hostname or ""
    if host == "localhost":
        return True
    labels = host.split(".")
    return len(labels) >= 2 and all(_HOST_LABEL.match(label) for label in labels)


def extract_urls(prompt: str, limit: int = MAX_URLS) -> list[str]:
    """Well-formed http(s) URLs in ``prompt``, deduplicated, at most ``limit``."""
    urls: list[str] = []
    for match in URL_PATTERN.findall(prompt or ""):
        url = match.rstrip(".,;:!?")
        if url in urls or not is_valid_url(url):
            continue
        urls.append(url)
        if len(urls) >= limit:
            break
    return urls


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


class HttpCrawler:
    """Fetch a page with httpx and reduce it to readable text."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def crawl(self, url: str) -> CrawledContent | None:
        headers = {"User-Agent": "codeforge-crawler/0.1"}
        if self._client is not None:
            resp = await self._client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=CRAWL_TIMEOUT_S, follow_redirects=True) as client:
                resp = await client.get(url, headers=headers)
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "")
        text = html_to_text(resp.text) if "html" in content_type else resp.text
        return CrawledContent(url=url, content=text[:MAX_CONTENT_CHARS])


async def crawl_with_timeout(
    crawler: Crawler, url: str, timeout_s: float = CRAWL_TIMEOUT_S
) -> CrawledContent | None:
    """Crawl one URL, returning None on timeout or any failure."""
    try:
        return await asyncio.wait_for(crawler.crawl(url), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("crawl timed out after %.1fs: %s", timeout_s, url)
    except Exception as e:
        logger.warning("crawl failed for %s: %s", url, str(e))
    return None


async def crawl_prompt_urls(
    crawler: Crawler, prompt: str, timeout_s: float = CRAWL_TIMEOUT_S
) -> list[CrawledContent]:
    urls = extract_urls(prompt)
    if not urls:
        return []
    results = await asyncio.gather(*(crawl_with_timeout(crawler, u, timeout_s) for u in urls))
    return [r for r in results if r is not None and r.content]
