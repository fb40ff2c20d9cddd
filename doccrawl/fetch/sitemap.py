"""Sitemap discovery over httpx with nested-index support."""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

import httpx
import structlog

from doccrawl.errors import DiscoveryFailure
from doccrawl.normalize.urls import canonicalize, is_in_scope, origin
from doccrawl.observability.tracing import span

LOGGER = structlog.get_logger(__name__)

_LOC = re.compile(r"<loc>\s*(?:<!\[CDATA\[)?(.*?)(?:\]\]>)?\s*</loc>", re.IGNORECASE | re.DOTALL)
_SITEMAP_ENTRY = re.compile(r"<sitemap[^>]*>(.*?)</sitemap>", re.IGNORECASE | re.DOTALL)
_INDEX_MARKER = re.compile(r"<sitemapindex|<sitemap>", re.IGNORECASE)


@dataclass(frozen=True)
class SitemapLimits:
    root_timeout: float = 10.0
    nested_timeout: float = 5.0
    total_timeout: float = 30.0
    max_depth: int = 2


def is_sitemap_index(xml_text: str) -> bool:
    return bool(_INDEX_MARKER.search(xml_text))


def nested_sitemap_urls(xml_text: str) -> List[str]:
    urls: List[str] = []
    for entry in _SITEMAP_ENTRY.findall(xml_text):
        match = _LOC.search(entry)
        if match and match.group(1).strip():
            urls.append(match.group(1).strip())
    return urls


def page_urls(xml_text: str) -> List[str]:
    """Return the http(s) ``<loc>`` entries that are not themselves sitemaps."""
    urls: List[str] = []
    for raw in _LOC.findall(xml_text):
        url = raw.strip()
        if not url.startswith(("http://", "https://")):
            continue
        if url.lower().endswith(".xml"):
            continue
        urls.append(url)
    return urls


class SitemapFetcher:
    """Fetches ``/sitemap.xml`` for each seed origin and filters the result to scope."""

    def __init__(self, client: httpx.AsyncClient, limits: Optional[SitemapLimits] = None) -> None:
        self._client = client
        self._limits = limits or SitemapLimits()

    async def _get(self, url: str, timeout: float) -> Optional[str]:
        with span(name="sitemap", url=url):
            response = await self._client.get(url, timeout=timeout, follow_redirects=True)
        if response.status_code >= 400:
            LOGGER.info("sitemap_not_found", url=url, status=response.status_code)
            return None
        return response.text

    async def _collect(self, url: str, depth: int, deadline: float) -> List[str]:
        if time.monotonic() > deadline:
            LOGGER.info("sitemap_budget_exhausted", url=url)
            return []
        if depth > self._limits.max_depth:
            LOGGER.info("sitemap_depth_exceeded", url=url, depth=depth)
            return []
        timeout = self._limits.root_timeout if depth == 0 else self._limits.nested_timeout
        try:
            xml_text = await self._get(url, timeout)
        except httpx.HTTPError as exc:
            if depth == 0:
                raise DiscoveryFailure(f"Sitemap fetch failed for {url}: {exc}") from exc
            LOGGER.warning("nested_sitemap_failed", url=url, reason=str(exc))
            return []
        if xml_text is None:
            return []
        if not is_sitemap_index(xml_text):
            urls = page_urls(xml_text)
            LOGGER.info("sitemap_parsed", url=url, depth=depth, urls=len(urls))
            return urls

        collected: List[str] = []
        for nested in nested_sitemap_urls(xml_text):
            if time.monotonic() > deadline:
                LOGGER.info("sitemap_budget_exhausted", url=nested)
                break
            collected.extend(await self._collect(nested, depth + 1, deadline))
        collected.extend(page_urls(xml_text))
        return collected

    async def fetch(self, sitemap_url: str) -> List[str]:
        """Return raw page URLs reachable from ``sitemap_url``."""
        deadline = time.monotonic() + self._limits.total_timeout
        return await self._collect(sitemap_url, 0, deadline)

    async def discover(self, seeds: Iterable[str], *, strict: bool = True) -> List[str]:
        """Return canonical in-scope URLs listed in the seeds' sitemaps.

        Raises ``DiscoveryFailure`` when a root sitemap cannot be fetched at
        all; a missing sitemap simply yields no URLs.
        """
        canonical_seeds = [seed for seed in (canonicalize(item) for item in seeds) if seed]
        origins: List[str] = []
        for seed in canonical_seeds:
            if origin(seed) not in origins:
                origins.append(origin(seed))

        deadline = time.monotonic() + self._limits.total_timeout
        found: List[str] = []
        seen = set()
        for base in origins:
            raw = await self._collect(f"{base}/sitemap.xml", 0, deadline)
            for url in raw:
                canonical = canonicalize(url)
                if canonical and canonical not in seen and is_in_scope(canonical, canonical_seeds, strict):
                    seen.add(canonical)
                    found.append(canonical)
        LOGGER.info("sitemap_discovery_done", origins=origins, urls=len(found))
        return found
