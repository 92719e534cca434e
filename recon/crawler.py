from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from lxml import etree, html as lxml_html

from recon.config import Settings

log = logging.getLogger(__name__)

_MAX_TEXT = 50_000


class CrawlError(Exception):
    """Crawl service unreachable or returned an unusable response."""


@dataclass
class CrawledPage:
    url: str
    title: str
    content: str


def normalize_url(url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


# ---------------------------------------------------------------------------
# HTML helpers (direct fetch mode)
# ---------------------------------------------------------------------------


def extract_title(raw_html: str) -> str:
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    return " ".join(" ".join(tree.xpath("//title//text()")).split())


def extract_text(raw_html: str) -> str:
    """Extract readable text from HTML using lxml."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    meta = " ".join(tree.xpath("//meta[@name='description']/@content")).strip()
    headings = " ".join(tree.xpath("//h1//text() | //h2//text() | //h3//text()")).strip()
    paragraphs = " ".join(tree.xpath("//p//text() | //li//text()")).strip()

    parts = []
    if meta:
        parts.append(meta)
    if headings:
        parts.append(headings)
    if paragraphs:
        parts.append(paragraphs)
    return "\n".join(parts)[:_MAX_TEXT]


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------


class Crawler:
    """Fetch pages for a seed URL.

    With a Firecrawl API key the hosted crawl endpoint is used and may
    return several pages per seed. Without one, the seed page itself is
    fetched and reduced to text with lxml.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "https://api.firecrawl.dev",
        user_agent: str = "ReconBot/1.0 (+https://recon.local)",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> Crawler:
        return cls(
            api_key=settings.firecrawl_api_key,
            base_url=settings.firecrawl_base_url,
            user_agent=settings.user_agent,
            timeout_seconds=settings.request_timeout_seconds,
            **kwargs,
        )

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self._transport,
            **kwargs,
        )

    async def crawl(self, url: str) -> list[CrawledPage]:
        url = normalize_url(url)
        try:
            if self.api_key:
                return await self._crawl_service(url)
            return await self._fetch_direct(url)
        except httpx.HTTPError as exc:
            raise CrawlError(f"Crawl failed for {url}: {exc}") from exc

    async def _crawl_service(self, url: str) -> list[CrawledPage]:
        headers = {"Authorization": f"Bearer {self.api_key}", "User-Agent": self.user_agent}
        async with self._client(headers=headers) as client:
            resp = await client.post(f"{self.base_url}/v1/crawl", json={"url": url})
            resp.raise_for_status()
            try:
                body = resp.json()
            except ValueError as exc:
                raise CrawlError(f"Crawl service returned non-JSON for {url}") from exc

        if not isinstance(body, dict) or not body.get("success"):
            raise CrawlError(f"Crawl service reported failure for {url}")
        pages = []
        for item in body.get("pages") or []:
            if not isinstance(item, dict):
                continue
            pages.append(CrawledPage(
                url=str(item.get("url") or url),
                title=str(item.get("title") or ""),
                content=str(item.get("content") or ""),
            ))
        log.info("Crawl service returned %d page(s) for %s", len(pages), url)
        return pages

    async def _fetch_direct(self, url: str) -> list[CrawledPage]:
        async with self._client(headers={"User-Agent": self.user_agent}) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            raw_html = resp.text
        return [CrawledPage(url=url, title=extract_title(raw_html), content=extract_text(raw_html))]
