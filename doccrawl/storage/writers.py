"""Export writers for the pages captured by one job."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List

import orjson
import yaml

from doccrawl.storage.models import Page

__all__ = [
    "EXPORT_FORMATS",
    "format_markdown",
    "format_text",
    "write_export",
    "write_jsonl",
]

EXPORT_FORMATS = ("jsonl", "text", "markdown")

_SEPARATOR = "=" * 80

_TEXT_LABELS = [
    ("generator", "Generator"),
    ("og_type", "Type"),
    ("keywords", "Keywords"),
    ("author", "Author"),
    ("og_site_name", "Site Name"),
    ("article_section", "Section"),
]


def write_jsonl(path: Path, pages: Iterable[Page]) -> Path:
    """Write one JSON record per page, without the raw HTML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        for page in pages:
            handle.write(orjson.dumps(page.model_dump(mode="json", exclude={"html"})).decode())
            handle.write("\n")
    return path


def _metadata_lines(page: Page) -> List[str]:
    metadata = page.metadata or {}
    lines: List[str] = []
    if metadata.get("canonical"):
        lines.append(f"Canonical URL: {metadata['canonical']}")
    if len(page.alternate_urls) > 1:
        lines.append(f"Alternate URLs: {', '.join(page.alternate_urls[1:])}")
    if metadata.get("og_title"):
        lines.append(f"Title: {metadata['og_title']}")
    description = metadata.get("description") or metadata.get("og_description")
    if description:
        lines.append(f"Description: {description}")
    for key, label in _TEXT_LABELS:
        if metadata.get(key):
            lines.append(f"{label}: {metadata[key]}")
    if metadata.get("article_tags"):
        lines.append(f"Tags: {', '.join(metadata['article_tags'])}")
    return lines


def _text_block(page: Page) -> str:
    lines = _metadata_lines(page)
    header = f"URL: {page.url}"
    if lines:
        header = header + "\n" + "\n".join(lines)
    return f"{_SEPARATOR}\n{header}\n{_SEPARATOR}\n\n{page.content}\n\n"


def format_text(pages: Iterable[Page]) -> str:
    """Concatenate page text, each page under a metadata header."""
    return "\n".join(_text_block(page) for page in pages)


def _front_matter(page: Page) -> Dict[str, object]:
    metadata = page.metadata or {}
    matter: Dict[str, object] = {"url": page.url}
    if metadata.get("canonical"):
        matter["canonical"] = metadata["canonical"]
    if len(page.alternate_urls) > 1:
        matter["alternate_urls"] = page.alternate_urls
    title = metadata.get("og_title") or metadata.get("title")
    if title:
        matter["title"] = title
    description = metadata.get("description") or metadata.get("og_description")
    if description:
        matter["description"] = description
    for key, name in (
        ("generator", "generator"),
        ("og_type", "type"),
        ("keywords", "keywords"),
        ("author", "author"),
        ("og_site_name", "og_site_name"),
        ("article_section", "section"),
        ("article_tags", "tags"),
    ):
        if metadata.get(key):
            matter[name] = metadata[key]
    return matter


def format_markdown(pages: Iterable[Page]) -> str:
    """Concatenate page markdown with YAML front matter, falling back to text."""
    blocks: List[str] = []
    for page in pages:
        if not page.markdown:
            blocks.append(_text_block(page))
            continue
        matter = yaml.safe_dump(_front_matter(page), sort_keys=False, allow_unicode=True)
        blocks.append(f"---\n{matter}---\n\n{page.markdown}")
    return "\n---\n\n".join(blocks)


def write_export(path: Path, pages: List[Page], fmt: str) -> Path:
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    if fmt == "jsonl":
        return write_jsonl(path, pages)
    path.parent.mkdir(parents=True, exist_ok=True)
    body = format_text(pages) if fmt == "text" else format_markdown(pages)
    path.write_text(body, encoding="utf-8")
    return path
