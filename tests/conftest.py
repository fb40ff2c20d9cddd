import asyncio
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from doccrawl.errors import RenderFailure
from doccrawl.fetch.renderer import RenderedPage, Renderer, RenderRequest
from doccrawl.normalize.urls import canonicalize
from doccrawl.observability.log import configure_logging
from doccrawl.orchestrator.options import CrawlOptions
from doccrawl.parse.content import extract_metadata, html_to_text
from doccrawl.parse.discovery import Discovery
from doccrawl.service import CrawlService
from doccrawl.storage.layout import DataLayout
from doccrawl.storage.store import SQLitePageStore


class FakeRenderer(Renderer):
    """Serves HTML from a dict keyed by canonical URL."""

    name = "fake"

    def __init__(
        self,
        pages: Dict[str, str],
        *,
        delay: float = 0.0,
        fail: Iterable[str] = (),
        hang: Iterable[str] = (),
    ) -> None:
        self.pages = {canonicalize(url): html for url, html in pages.items()}
        self.delay = delay
        self.fail = {canonicalize(url) for url in fail}
        self.hang = {canonicalize(url) for url in hang}
        self.calls: List[str] = []

    async def _render(self, url: str, request: RenderRequest) -> RenderedPage:
        self.calls.append(url)
        key = canonicalize(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.hang:
            await asyncio.sleep(3600)
        if key in self.fail:
            raise RenderFailure(url, "renderer crashed")
        html = self.pages.get(key)
        if html is None:
            raise RenderFailure(url, "HTTP 404")
        return RenderedPage(html=html, text=html_to_text(html), metadata=extract_metadata(html))


def make_html(body: str, links: Iterable[str] = (), title: Optional[str] = None) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    head = f"<title>{title}</title>" if title else ""
    return f"<html><head>{head}</head><body><main><p>{body}</p><nav>{anchors}</nav></main></body></html>"


@pytest.fixture(scope="session", autouse=True)
def _structured_logging():
    configure_logging(None)


@pytest.fixture()
def html_page():
    return make_html


@pytest.fixture()
def store(tmp_path: Path) -> SQLitePageStore:
    return SQLitePageStore(tmp_path / "crawl.db")


@pytest.fixture()
def crawl_options():
    def _build(**overrides) -> CrawlOptions:
        values = {
            "request_delay_ms": 0,
            "idle_poll_ms": 5,
            "pause_poll_ms": 5,
            "use_sitemap": False,
        }
        values.update(overrides)
        return CrawlOptions(**values)

    return _build


@pytest.fixture()
def fake_renderer():
    return FakeRenderer


@pytest.fixture()
def make_service(tmp_path: Path, store: SQLitePageStore):
    def _build(pages: Dict[str, str], **renderer_kwargs):
        renderer = FakeRenderer(pages, **renderer_kwargs)
        service = CrawlService(
            store=store,
            renderer=renderer,
            discovery=Discovery(),
            layout=DataLayout(root=tmp_path / "data"),
            settings={
                "crawl": {
                    "request_delay_ms": 0,
                    "idle_poll_ms": 5,
                    "pause_poll_ms": 5,
                    "use_sitemap": False,
                }
            },
        )
        return service, renderer

    return _build
