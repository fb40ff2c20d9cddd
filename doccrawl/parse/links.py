"""Link extraction from rendered HTML."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Set
from urllib.parse import urldefrag

from bs4 import BeautifulSoup

from doccrawl.normalize.urls import MAX_URL_LENGTH, canonicalize, is_in_scope, is_valid_url, resolve_url, url_path

SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")

DOWNLOAD_EXTENSIONS = (
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".xlsm", ".ppt", ".pptx",
    ".odt", ".ods", ".odp",
    ".zip", ".tar", ".gz", ".rar", ".7z", ".bz2",
    ".psd", ".ai", ".eps",
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv",
    ".mp3", ".wav", ".flac", ".aac", ".ogg",
    ".exe", ".dmg", ".pkg", ".deb", ".rpm", ".apk",
    ".csv", ".xml", ".json", ".sql", ".db",
)


@dataclass(frozen=True)
class DiscoveredLink:
    url: str
    depth: int


def is_download_url(url: str) -> bool:
    return url_path(url).lower().endswith(DOWNLOAD_EXTENSIONS)


def _usable_href(href: str) -> bool:
    if not href or href.startswith("#") or len(href) > MAX_URL_LENGTH:
        return False
    return not href.lower().startswith(SKIPPED_SCHEMES)


def extract_links(
    html: str,
    page_url: str,
    seeds: Sequence[str],
    *,
    strict: bool = True,
    follow_external: bool = False,
    max_external_hops: int = 1,
    current_depth: int = 0,
) -> List[DiscoveredLink]:
    """Return the crawlable links of a page in document order.

    URLs are returned resolved against ``page_url`` with the fragment removed;
    duplicates are detected on their canonical form.

    In-scope links are depth 0 regardless of the page they were found on.
    Out-of-scope links are returned at ``current_depth + 1`` only when
    external links are followed and that depth stays within the hop limit.
    """
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    links: List[DiscoveredLink] = []
    seen: Set[str] = set()
    for anchor in soup.find_all(["a", "area"], href=True):
        href = anchor["href"].strip()
        if not _usable_href(href):
            continue
        resolved = resolve_url(href, page_url)
        if not is_valid_url(resolved):
            continue
        resolved = urldefrag(resolved).url
        canonical = canonicalize(resolved)
        if canonical is None or canonical in seen or is_download_url(canonical):
            continue
        if is_in_scope(canonical, seeds, strict):
            depth = 0
        elif follow_external and current_depth + 1 <= max_external_hops:
            depth = current_depth + 1
        else:
            continue
        seen.add(canonical)
        links.append(DiscoveredLink(url=resolved, depth=depth))
    return links
