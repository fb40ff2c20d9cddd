"""Renderer backends that turn a URL into HTML, text, metadata and markdown."""
from __future__ import annotations

import abc
import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import structlog

from doccrawl.errors import RenderFailure
from doccrawl.observability.tracing import log_render_result, span
from doccrawl.parse.content import extract_metadata, html_to_text

LOGGER = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "doccrawl/0.1"
SESSION_MODES = ("shared", "incognito")


@dataclass
class RenderRequest:
    timeout_ms: int = 30000
    wait_hints: List[str] = field(default_factory=list)
    session_mode: str = "shared"


@dataclass
class RenderedPage:
    html: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    markdown: Optional[str] = None


class Renderer(abc.ABC):
    """Base class bounding every backend call with the request timeout."""

    name = "renderer"

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "Renderer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @abc.abstractmethod
    async def _render(self, url: str, request: RenderRequest) -> RenderedPage:
        ...

    async def render(self, url: str, request: RenderRequest) -> RenderedPage:
        started = time.perf_counter()
        try:
            with span(name="render", url=url):
                page = await asyncio.wait_for(self._render(url, request), timeout=request.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise RenderFailure(url, f"Render timed out after {request.timeout_ms} ms", timed_out=True) from exc
        except RenderFailure:
            raise
        except (httpx.HTTPError, OSError, RuntimeError, ValueError) as exc:
            raise RenderFailure(url, f"{type(exc).__name__}: {exc}") from exc
        log_render_result(
            url=url,
            source=self.name,
            html_bytes=len(page.html.encode("utf-8")),
            text_chars=len(page.text),
            elapsed_ms=int((time.perf_counter() - started) * 1000),
        )
        return page


def _page_from_html(html: str, *, text: Optional[str] = None, markdown: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> RenderedPage:
    merged = extract_metadata(html) if html else {}
    for key in ("title", "description", "keywords", "author"):
        if metadata and metadata.get(key) and key not in merged:
            merged[key] = metadata[key]
    return RenderedPage(
        html=html,
        text=text if text else html_to_text(html),
        metadata=merged,
        markdown=markdown or None,
    )


class HttpxRenderer(Renderer):
    """Static HTML over HTTP; no JavaScript is executed."""

    name = "httpx"

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._user_agent = user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self._user_agent},
                follow_redirects=True,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _render(self, url: str, request: RenderRequest) -> RenderedPage:
        await self.start()
        client = self._client
        if request.session_mode == "incognito":
            client.cookies.clear()
        response = await client.get(url, timeout=request.timeout_ms / 1000)
        if response.status_code >= 400:
            raise RenderFailure(url, f"HTTP {response.status_code}")
        return _page_from_html(response.text)


def wait_condition(wait_hints: List[str]) -> Optional[str]:
    """Build a crawl4ai ``wait_for`` condition requiring every selector to be present."""
    if not wait_hints:
        return None
    return f"js:() => {json.dumps(wait_hints)}.every(s => document.querySelector(s))"


class Crawl4aiRenderer(Renderer):
    """Full browser rendering through crawl4ai's ``AsyncWebCrawler``.

    One crawler is kept per session mode: ``shared`` uses a persistent browser
    profile under ``profile_dir`` so cookies survive between pages, while
    ``incognito`` uses a throwaway context.
    """

    name = "crawl4ai"

    def __init__(self, *, user_agent: str = DEFAULT_USER_AGENT, headless: bool = True, profile_dir: Optional[Path] = None) -> None:
        self._user_agent = user_agent
        self._headless = headless
        self._profile_dir = profile_dir
        self._crawlers: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def _crawler(self, session_mode: str) -> Any:
        from crawl4ai import AsyncWebCrawler, BrowserConfig

        async with self._lock:
            crawler = self._crawlers.get(session_mode)
            if crawler is not None:
                return crawler
            options: Dict[str, Any] = {"headless": self._headless, "user_agent": self._user_agent}
            if session_mode != "incognito" and self._profile_dir is not None:
                self._profile_dir.mkdir(parents=True, exist_ok=True)
                options.update(use_persistent_context=True, user_data_dir=str(self._profile_dir))
            crawler = AsyncWebCrawler(config=BrowserConfig(**options))
            await crawler.start()
            self._crawlers[session_mode] = crawler
            return crawler

    async def close(self) -> None:
        crawlers, self._crawlers = list(self._crawlers.values()), {}
        for crawler in crawlers:
            await crawler.close()

    async def _render(self, url: str, request: RenderRequest) -> RenderedPage:
        from crawl4ai import CacheMode, CrawlerRunConfig

        crawler = await self._crawler(request.session_mode)
        config = CrawlerRunConfig(
            cache_mode=CacheMode.BYPASS,
            wait_for=wait_condition(request.wait_hints),
            page_timeout=request.timeout_ms,
        )
        result = await crawler.arun(url=url, config=config)
        if not result.success:
            raise RenderFailure(url, result.error_message or "Render failed")
        markdown = result.markdown
        if markdown is not None and not isinstance(markdown, str):
            markdown = getattr(markdown, "raw_markdown", None)
        return _page_from_html(result.html or "", markdown=markdown, metadata=result.metadata or {})


def build_renderer(settings: Dict[str, Any], *, data_root: Optional[Path] = None) -> Renderer:
    """Create the renderer named by ``[render].backend``."""
    render = settings.get("render", {})
    backend = render.get("backend", "crawl4ai")
    user_agent = render.get("user_agent", DEFAULT_USER_AGENT)
    if backend == "httpx":
        return HttpxRenderer(user_agent=user_agent)
    if backend == "crawl4ai":
        profile_dir = data_root / "browser-profile" if data_root is not None else None
        return Crawl4aiRenderer(user_agent=user_agent, headless=render.get("headless", True), profile_dir=profile_dir)
    raise ValueError(f"Unknown render backend: {backend}")
