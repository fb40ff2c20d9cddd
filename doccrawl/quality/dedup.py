"""Content-hash deduplication and the final page-limit gate before a save."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from doccrawl.storage.models import Page, PageStatus
from doccrawl.storage.store import PageStore

LOGGER = structlog.get_logger(__name__)


class CommitOutcome(str, Enum):
    SAVED = "saved"
    FOLDED = "folded"
    DISCARDED = "discarded"


@dataclass
class CapturedContent:
    """Everything the pipeline extracted for one URL, ready to persist."""

    url: str
    canonical_url: str
    content: str
    content_hash: str
    html: Optional[str] = None
    markdown: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Deduplicator:
    """Serialises the lookup-then-save section of every worker in one job.

    The hash lookup, the limit re-check, the save and the seed counter update
    run under a single lock, so at most one page per content hash is saved
    and a seed never exceeds its limit.
    """

    def __init__(
        self,
        store: PageStore,
        job_id: str,
        *,
        has_capacity: Callable[[Optional[str]], bool],
        on_saved: Callable[[Optional[str]], None],
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._has_capacity = has_capacity
        self._on_saved = on_saved
        self._lock = asyncio.Lock()

    async def commit(self, captured: CapturedContent, seed: Optional[str]) -> Tuple[CommitOutcome, Optional[Page]]:
        async with self._lock:
            existing = await self._store.get_page_by_content_hash(self._job_id, captured.content_hash)
            if existing is not None:
                page = await self._store.update_page_alternate_urls(existing.id, captured.url)
                LOGGER.info("duplicate_folded", url=captured.url, page_id=existing.id, primary=existing.url)
                return CommitOutcome.FOLDED, page
            if not self._has_capacity(seed):
                LOGGER.info("page_limit_discard", url=captured.url, seed=seed)
                return CommitOutcome.DISCARDED, None
            page = await self._store.save_page(
                self._job_id,
                captured.url,
                captured.canonical_url,
                captured.content,
                status=PageStatus.SUCCESS,
                html=captured.html,
                content_hash=captured.content_hash,
                metadata=captured.metadata or None,
                markdown=captured.markdown,
            )
            self._on_saved(seed)
            return CommitOutcome.SAVED, page
