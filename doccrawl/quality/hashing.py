"""Deterministic content digests used as the duplicate-content key."""
from __future__ import annotations

import hashlib


def content_hash(text: str) -> str:
    """Return the SHA-256 hex digest of the extracted page text.

    Only the text body is hashed; metadata never participates so two pages
    with identical bodies and different ``<head>`` tags still collapse.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
