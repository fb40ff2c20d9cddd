"""Cache-aware fetch pipeline run by a worker for one URL."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import structlog

from doccrawl.fetch.renderer import RenderedPage, RenderRequest
from doccrawl.parse.content import clean_text
from doccrawl.quality.dedup import CapturedContent, CommitOutcome
from doccrawl.quality.hashing import content_hash
from doccrawl.storage.models import Page

if TYPE_CHECKING:
    from doccrawl.orchestrator.jobs import CrawlJob

LOGGER = structlog.get_logger(__name__)


class FetchPipeline:
    """Runs cache check, render, link discovery, cleaning, hashing and commit for a URL.

    Exceptions propagate to the worker, which records them as a failure of
    this URL.
    """

    def __init__(self, job: "CrawlJob") -> None:
        self._job = job

    def _request(self) -> RenderRequest:
        options = self._job.options
        return RenderRequest(
            timeout_ms=options.render_timeout_ms,
            wait_hints=list(options.wait_hints),
            session_mode=options.session_mode,
        )

    async def _render(self, url: str) -> RenderedPage:
        job = self._job
        page = await job.renderer.render(url, self._request())
        job.metrics.incr("pages_rendered")
        return page

    def _discover(self, html: str, page_url: str, depth: int) -> None:
        job = self._job
        links = job.discovery.extract_links(html, page_url, job.canonical_seeds, job.options, depth)
        admitted = 0
        for link in links:
            if job.enqueue(link.url, link.depth):
                admitted += 1
        job.metrics.incr("links_discovered", admitted)
        LOGGER.debug("links_extracted", url=page_url, found=len(links), admitted=admitted)

    async def _cached(self, url: str) -> Optional[Page]:
        job = self._job
        if job.options.skip_cache:
            return None
        cached = await job.store.get_page_by_canonical_url(url)
        if cached is None:
            job.metrics.incr("cache_misses")
        elif cached.html:
            job.metrics.incr("cache_hits")
        else:
            job.metrics.incr("cache_html_misses")
        return cached

    async def run(self, url: str) -> CommitOutcome:
        job = self._job
        fetch_url = job.frontier.fetch_url(url)
        depth = job.frontier.depth(url)
        cached = await self._cached(url)

        if cached is not None and cached.html:
            LOGGER.info("cache_hit", url=url, cached_page=cached.id)
            self._discover(cached.html, fetch_url, depth)
            captured = CapturedContent(
                url=fetch_url,
                canonical_url=url,
                content=cached.content,
                content_hash=cached.content_hash or content_hash(cached.content),
                html=cached.html,
                markdown=cached.markdown,
                metadata=dict(cached.metadata or {}),
            )
        elif cached is not None:
            # Rendered only to find links; the cached text is kept as is.
            rendered = await self._render(fetch_url)
            self._discover(rendered.html, fetch_url, depth)
            captured = CapturedContent(
                url=fetch_url,
                canonical_url=url,
                content=cached.content,
                content_hash=cached.content_hash or content_hash(cached.content),
                html=rendered.html,
                markdown=cached.markdown or rendered.markdown,
                metadata=dict(cached.metadata or rendered.metadata),
            )
        else:
            rendered = await self._render(fetch_url)
            self._discover(rendered.html, fetch_url, depth)
            text = clean_text(rendered.text)
            captured = CapturedContent(
                url=fetch_url,
                canonical_url=url,
                content=text,
                content_hash=content_hash(text),
                html=rendered.html,
                markdown=rendered.markdown,
                metadata=dict(rendered.metadata),
            )

        outcome, _ = await job.deduplicator.commit(captured, job.seed_for(url))
        if outcome is CommitOutcome.SAVED:
            job.metrics.incr("pages_saved")
        elif outcome is CommitOutcome.FOLDED:
            job.metrics.incr("duplicates")
        else:
            job.metrics.incr("limit_discards")
        return outcome
