"""URL canonicalisation and crawl scope helpers."""
from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

MAX_URL_LENGTH = 2000
_DEFAULT_PORTS = {80, 443}


def canonicalize(url: object) -> Optional[str]:
    """Return the canonical form of ``url`` or ``None`` when it cannot be parsed.

    Canonical URLs are always ``https``, are lowercase, have no ``www.``
    prefix and no default port, carry no trailing slash (except for the root
    path) and have neither a fragment nor a query string.
    """
    if not isinstance(url, str):
        return None
    candidate = url.strip()
    if not candidate or len(candidate) > MAX_URL_LENGTH:
        return None
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and port not in _DEFAULT_PORTS:
        netloc = f"{host}:{port}"

    # Paths are folded too: "/Docs/" and "/docs" name the same crawl target.
    path = (parts.path or "/").lower()
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urlunsplit(("https", netloc, path, "", ""))


def resolve_url(href: str, page_url: str) -> Optional[str]:
    """Resolve a possibly relative ``href`` against the page it appeared on."""
    try:
        return urljoin(page_url, href)
    except ValueError:
        return None


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


def url_path(url: str) -> str:
    return urlsplit(url).path or "/"


def origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def is_under_base_path(url: str, seed: str, strict: bool = True) -> bool:
    """Return True when canonical ``url`` falls inside the scope of canonical ``seed``.

    Strict mode requires the path boundary to land on ``/`` so that
    ``/docs`` covers ``/docs/intro`` but not ``/docs-legacy``; loose mode is a
    plain prefix match.
    """
    try:
        target = urlsplit(url)
        base = urlsplit(seed)
    except ValueError:
        return False
    if target.netloc != base.netloc:
        return False
    target_path = target.path or "/"
    base_path = base.path or "/"
    if not target_path.startswith(base_path):
        return False
    if not strict:
        return True
    if target_path == base_path or base_path == "/":
        return True
    return target_path[len(base_path)] == "/"


def matching_seed(url: str, seeds: Iterable[str], strict: bool = True) -> Optional[str]:
    """Return the first seed whose scope contains ``url``."""
    for seed in seeds:
        if is_under_base_path(url, seed, strict):
            return seed
    return None


def is_in_scope(candidate: str, seeds: Iterable[str], strict: bool = True) -> bool:
    return matching_seed(candidate, seeds, strict) is not None
