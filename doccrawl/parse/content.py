"""Text cleaning and ``<head>`` metadata extraction."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

EMPTY_CONTENT = "No content extracted from this page."

_BLANK_RUNS = re.compile(r"\n{3,}")
_DROP_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")

_META_NAMES = {
    "description": "description",
    "keywords": "keywords",
    "author": "author",
    "generator": "generator",
}
_META_PROPERTIES = {
    "og:title": "og_title",
    "og:description": "og_description",
    "og:type": "og_type",
    "og:site_name": "og_site_name",
    "article:section": "article_section",
}


def clean_text(text: Optional[str]) -> str:
    """Normalise whitespace of extracted text.

    Runs of three or more newlines collapse to a blank line, trailing
    whitespace is removed from every line, and the result is trimmed.
    """
    if not text:
        return EMPTY_CONTENT
    collapsed = _BLANK_RUNS.sub("\n\n", text.replace("\r\n", "\n"))
    lines = [line.rstrip() for line in collapsed.split("\n")]
    cleaned = _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()
    return cleaned or EMPTY_CONTENT


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(list(_DROP_TAGS)):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    return clean_text(root.get_text("\n"))


def extract_metadata(html: str) -> Dict[str, Any]:
    """Collect title, description, Open Graph and article tags from ``<head>``."""
    soup = BeautifulSoup(html, "html.parser")
    metadata: Dict[str, Any] = {}
    if soup.title and soup.title.string:
        metadata["title"] = soup.title.string.strip()

    tags: List[str] = []
    for meta in soup.find_all("meta"):
        content = (meta.get("content") or "").strip()
        if not content:
            continue
        name = (meta.get("name") or "").lower()
        prop = (meta.get("property") or "").lower()
        if name in _META_NAMES:
            metadata.setdefault(_META_NAMES[name], content)
        elif prop in _META_PROPERTIES:
            metadata.setdefault(_META_PROPERTIES[prop], content)
        elif prop == "article:tag":
            tags.append(content)
    if tags:
        metadata["article_tags"] = tags

    canonical = soup.find("link", rel="canonical")
    if canonical and canonical.get("href"):
        metadata["canonical"] = canonical["href"].strip()
    return metadata
