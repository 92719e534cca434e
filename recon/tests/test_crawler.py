"""Tests for the crawler against a mocked HTTP transport."""
from __future__ import annotations

import json

import httpx
import pytest

from recon.crawler import CrawlError, Crawler, extract_text, extract_title, normalize_url

PAGE = """
<html><head><title>Mercy  Health</title>
<meta name="description" content="Regional health system"></head>
<body><h1>News</h1><p>Mercy opens a new clinic.</p><ul><li>Epic go-live</li></ul>
<script>var x = 1;</script></body></html>
"""


class TestHelpers:
    def test_normalize_url(self):
        assert normalize_url(" mercy.example ") == "https://mercy.example"
        assert normalize_url("http://mercy.example") == "http://mercy.example"

    def test_extract_title(self):
        assert extract_title(PAGE) == "Mercy Health"

    def test_extract_text_skips_scripts(self):
        text = extract_text(PAGE)
        assert "Regional health system" in text
        assert "Mercy opens a new clinic." in text
        assert "Epic go-live" in text
        assert "var x" not in text

    def test_empty_html(self):
        assert extract_text("") == ""
        assert extract_title("") == ""


class TestCrawler:
    @pytest.mark.asyncio
    async def test_direct_fetch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["user-agent"] == "TestBot"
            return httpx.Response(200, text=PAGE)

        crawler = Crawler(user_agent="TestBot", transport=httpx.MockTransport(handler))
        pages = await crawler.crawl("mercy.example")
        assert len(pages) == 1
        assert pages[0].url == "https://mercy.example"
        assert pages[0].title == "Mercy Health"

    @pytest.mark.asyncio
    async def test_crawl_service(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/crawl"
            assert request.headers["authorization"] == "Bearer fc-key"
            assert json.loads(request.content) == {"url": "https://mercy.example"}
            return httpx.Response(200, json={"success": True, "pages": [
                {"url": "https://mercy.example/a", "title": "A", "content": "alpha"},
                {"url": "https://mercy.example/b", "content": "beta"},
                "junk",
            ]})

        crawler = Crawler(api_key="fc-key", base_url="https://crawl.example/",
                          transport=httpx.MockTransport(handler))
        pages = await crawler.crawl("https://mercy.example")
        assert [(p.url, p.title, p.content) for p in pages] == [
            ("https://mercy.example/a", "A", "alpha"),
            ("https://mercy.example/b", "", "beta"),
        ]

    @pytest.mark.asyncio
    async def test_service_failure_flag(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"success": False}))
        crawler = Crawler(api_key="k", transport=transport)
        with pytest.raises(CrawlError):
            await crawler.crawl("https://mercy.example")

    @pytest.mark.asyncio
    async def test_http_error_wrapped(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(503))
        crawler = Crawler(transport=transport)
        with pytest.raises(CrawlError):
            await crawler.crawl("https://mercy.example")
