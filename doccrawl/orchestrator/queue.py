"""URL frontier: the FIFO queue and the disjoint tracking sets of one crawl."""
from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Set


class UrlFrontier:
    """Holds every canonical URL of a crawl in exactly one of five places.

    ``queue`` (pending, FIFO), ``in_progress``, ``completed`` (saved as a
    unique page), ``failed`` and ``folded`` (content matched an existing page
    and was recorded as an alternate URL). A URL that left the queue without
    reaching any of these, because its seed hit the page limit, is forgotten.
    """

    def __init__(self) -> None:
        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self.in_progress: Set[str] = set()
        self.completed: Set[str] = set()
        self.failed: Set[str] = set()
        self.folded: Set[str] = set()
        self.url_depth: Dict[str, int] = {}
        self._fetch_urls: Dict[str, str] = {}

    def __contains__(self, url: str) -> bool:
        return (
            url in self._queued
            or url in self.in_progress
            or url in self.completed
            or url in self.failed
            or url in self.folded
        )

    def push(self, url: str, depth: int, fetch_url: Optional[str] = None) -> bool:
        if url in self:
            return False
        self._queue.append(url)
        self._queued.add(url)
        self.url_depth[url] = depth
        self._fetch_urls[url] = fetch_url or url
        return True

    def peek(self) -> Optional[str]:
        return self._queue[0] if self._queue else None

    def claim(self) -> Optional[str]:
        """Move the head of the queue into ``in_progress``."""
        if not self._queue:
            return None
        url = self._queue.popleft()
        self._queued.discard(url)
        self.in_progress.add(url)
        return url

    def drop_head(self) -> Optional[str]:
        """Discard the head of the queue without processing it."""
        if not self._queue:
            return None
        url = self._queue.popleft()
        self._queued.discard(url)
        return url

    def complete(self, url: str) -> None:
        self.in_progress.discard(url)
        self.completed.add(url)

    def fail(self, url: str) -> None:
        self.in_progress.discard(url)
        self.failed.add(url)

    def fold(self, url: str) -> None:
        self.in_progress.discard(url)
        self.folded.add(url)

    def release(self, url: str) -> None:
        self.in_progress.discard(url)

    def fetch_url(self, url: str) -> str:
        """Return the URL to render for a canonical URL, as it was first discovered."""
        return self._fetch_urls.get(url, url)

    def depth(self, url: str) -> int:
        return self.url_depth.get(url, 0)

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def pages_found(self) -> int:
        return len(self._queue) + len(self.in_progress) + len(self.completed) + len(self.folded)

    def queued(self) -> List[str]:
        return list(self._queue)
