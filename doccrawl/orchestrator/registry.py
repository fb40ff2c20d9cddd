"""Process-wide guard allowing a single active crawl."""
from __future__ import annotations

from typing import Callable, Optional, Sequence

import structlog

from doccrawl.errors import AlreadyRunning
from doccrawl.orchestrator.jobs import CrawlJob
from doccrawl.orchestrator.options import CrawlOptions

LOGGER = structlog.get_logger(__name__)

JobFactory = Callable[[Sequence[str], CrawlOptions], CrawlJob]


class CrawlRegistry:
    """Owns the optional reference to the active job.

    The reference is set before the job starts, so a concurrent ``start``
    observes it, and cleared by the job's terminal callback.
    ``last_started`` keeps the most recent job whose start succeeded.
    """

    def __init__(self, job_factory: JobFactory) -> None:
        self._job_factory = job_factory
        self._active: Optional[CrawlJob] = None
        self.last_started: Optional[CrawlJob] = None

    async def start(self, seeds: Sequence[str], options: CrawlOptions) -> str:
        if self._active is not None:
            raise AlreadyRunning(self._active.job_id)
        job = self._job_factory(seeds, options)
        job.add_terminal_callback(self._clear)
        self._active = job
        try:
            job_id = await job.start()
        except BaseException:
            self._clear(job)
            raise
        self.last_started = job
        return job_id

    def get_active(self) -> Optional[CrawlJob]:
        return self._active

    def cancel_active(self) -> bool:
        if self._active is None:
            return False
        self._active.cancel()
        return True

    def _clear(self, job: CrawlJob) -> None:
        if self._active is job:
            LOGGER.debug("registry_cleared", job_id=job.job_id)
            self._active = None
