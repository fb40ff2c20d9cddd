"""Exception taxonomy shared by the crawl engine and its collaborators."""
from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for every error raised by doccrawl."""


class AlreadyRunning(CrawlError):
    """A crawl is already active in this process."""

    def __init__(self, job_id: Optional[str] = None) -> None:
        message = "A crawl is already in progress"
        if job_id:
            message = f"{message} (job {job_id})"
        super().__init__(message)
        self.job_id = job_id


class InvalidSeed(CrawlError):
    """A seed URL could not be canonicalized."""

    def __init__(self, seeds: object) -> None:
        super().__init__(f"No usable seed URL in {seeds!r}")
        self.seeds = seeds


class RenderFailure(CrawlError):
    """Rendering a single URL failed or timed out."""

    def __init__(self, url: str, reason: str, *, timed_out: bool = False) -> None:
        super().__init__(reason)
        self.url = url
        self.timed_out = timed_out


class StorageFailure(CrawlError):
    """A Page Store operation failed."""


class DiscoveryFailure(CrawlError):
    """Sitemap or initial URL discovery failed."""


def describe_error(error: BaseException) -> str:
    """Format an exception as ``Name: message`` for job error records."""
    message = str(error)
    name = type(error).__name__
    if not message:
        return name
    return f"{name}: {message}"
