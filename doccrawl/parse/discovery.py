"""Initial URL discovery and per-page link discovery."""
from __future__ import annotations

from typing import Any, List, Optional, Sequence

import structlog

from doccrawl.errors import DiscoveryFailure
from doccrawl.fetch.sitemap import SitemapFetcher
from doccrawl.normalize.urls import canonicalize
from doccrawl.parse.links import DiscoveredLink, extract_links

LOGGER = structlog.get_logger(__name__)


class Discovery:
    """Combines sitemap lookup for seeds with link extraction from rendered pages.

    Without a ``SitemapFetcher`` only the seeds themselves are returned by
    ``discover_seed_urls``.
    """

    def __init__(self, sitemap: Optional[SitemapFetcher] = None) -> None:
        self._sitemap = sitemap

    async def discover_seed_urls(self, seeds: Sequence[str], *, strict: bool = True) -> List[str]:
        urls: List[str] = []
        for seed in seeds:
            canonical = canonicalize(seed)
            if canonical and canonical not in urls:
                urls.append(canonical)
        if self._sitemap is None:
            return urls
        try:
            found = await self._sitemap.discover(seeds, strict=strict)
        except DiscoveryFailure as exc:
            LOGGER.warning("sitemap_discovery_failed", reason=str(exc))
            return urls
        for url in found:
            if url not in urls:
                urls.append(url)
        return urls

    def extract_links(
        self,
        html: str,
        page_url: str,
        seeds: Sequence[str],
        options: Any,
        current_depth: int = 0,
    ) -> List[DiscoveredLink]:
        return extract_links(
            html,
            page_url,
            seeds,
            strict=options.strict_path_matching,
            follow_external=options.follow_external_links,
            max_external_hops=options.max_external_hops,
            current_depth=current_depth,
        )
