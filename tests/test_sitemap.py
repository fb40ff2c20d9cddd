import asyncio

import httpx
import pytest

from doccrawl.errors import DiscoveryFailure
from doccrawl.fetch.sitemap import SitemapFetcher, SitemapLimits, is_sitemap_index, nested_sitemap_urls, page_urls
from doccrawl.parse.discovery import Discovery

INDEX = """<?xml version="1.0"?>
<sitemapindex>
  <sitemap><loc>https://docs.example.com/sitemap-docs.xml</loc></sitemap>
  <sitemap><loc><![CDATA[https://docs.example.com/sitemap-blog.xml]]></loc></sitemap>
</sitemapindex>
"""

DOCS = """<urlset>
  <url><loc>https://docs.example.com/api/intro</loc></url>
  <url><loc>https://www.docs.example.com/api/auth/</loc></url>
  <url><loc>https://docs.example.com/api-legacy/old</loc></url>
  <url><loc>https://docs.example.com/feed.xml</loc></url>
</urlset>
"""

BLOG = """<urlset><url><loc>https://docs.example.com/blog/post</loc></url></urlset>"""


def _client(routes):
    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_parsers_distinguish_index_and_pages():
    assert is_sitemap_index(INDEX)
    assert not is_sitemap_index(DOCS)
    assert nested_sitemap_urls(INDEX) == [
        "https://docs.example.com/sitemap-docs.xml",
        "https://docs.example.com/sitemap-blog.xml",
    ]
    assert "https://docs.example.com/feed.xml" not in page_urls(DOCS)


def test_discover_follows_index_and_filters_scope():
    routes = {
        "https://docs.example.com/sitemap.xml": INDEX,
        "https://docs.example.com/sitemap-docs.xml": DOCS,
        "https://docs.example.com/sitemap-blog.xml": BLOG,
    }

    async def _run():
        async with _client(routes) as client:
            fetcher = SitemapFetcher(client)
            return await fetcher.discover(["https://docs.example.com/api"])

    found = asyncio.run(_run())
    assert found == [
        "https://docs.example.com/api/intro",
        "https://docs.example.com/api/auth",
    ]


def test_missing_sitemap_yields_nothing():
    async def _run():
        async with _client({}) as client:
            return await SitemapFetcher(client).discover(["https://docs.example.com/api"])

    assert asyncio.run(_run()) == []


def test_nested_depth_is_bounded():
    routes = {
        "https://a.com/sitemap.xml": "<sitemapindex><sitemap><loc>https://a.com/s1.xml</loc></sitemap></sitemapindex>",
        "https://a.com/s1.xml": "<sitemapindex><sitemap><loc>https://a.com/s2.xml</loc></sitemap></sitemapindex>",
        "https://a.com/s2.xml": "<urlset><url><loc>https://a.com/deep</loc></url></urlset>",
    }

    async def _run():
        async with _client(routes) as client:
            shallow = SitemapFetcher(client, SitemapLimits(max_depth=1))
            deep = SitemapFetcher(client, SitemapLimits(max_depth=2))
            return await shallow.fetch("https://a.com/sitemap.xml"), await deep.fetch("https://a.com/sitemap.xml")

    shallow, deep = asyncio.run(_run())
    assert shallow == []
    assert deep == ["https://a.com/deep"]


def test_unreachable_root_sitemap_raises_and_discovery_falls_back():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = SitemapFetcher(client)
            with pytest.raises(DiscoveryFailure):
                await fetcher.discover(["https://docs.example.com/api"])
            return await Discovery(fetcher).discover_seed_urls(["HTTPS://docs.example.com/api/"])

    assert asyncio.run(_run()) == ["https://docs.example.com/api"]
