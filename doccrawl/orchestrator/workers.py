"""Worker pool pulling URLs from a crawl job's frontier."""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List

import structlog

from doccrawl.observability.tracing import clear_context, set_context

if TYPE_CHECKING:
    from doccrawl.orchestrator.jobs import CrawlJob

LOGGER = structlog.get_logger(__name__)


class WorkerPool:
    """Runs ``n`` identical worker loops against one job on the event loop."""

    def __init__(self, job: "CrawlJob") -> None:
        self._job = job
        self.tasks: List[asyncio.Task] = []

    def spawn(self, count: int) -> List[asyncio.Task]:
        job = self._job
        job.active_workers += count
        for worker_id in range(count):
            task = asyncio.create_task(self._run(worker_id), name=f"doccrawl-worker-{worker_id}")
            self.tasks.append(task)
        return self.tasks

    async def _run(self, worker_id: int) -> None:
        job = self._job
        options = job.options
        set_context(job_id=job.job_id or "", worker_id=worker_id)
        processed = 0
        try:
            while True:
                if job.is_cancelled or job.is_globally_exhausted():
                    break
                if job.is_paused:
                    await asyncio.sleep(options.pause_poll_ms / 1000)
                    continue
                url = job.next_url()
                if url is None:
                    if job.frontier.in_progress:
                        # Siblings may still discover links.
                        await asyncio.sleep(options.idle_poll_ms / 1000)
                        continue
                    break
                await job.process_url(url)
                processed += 1
                if options.request_delay_ms and not job.is_cancelled:
                    await asyncio.sleep(options.request_delay_ms / 1000)
        finally:
            LOGGER.debug("worker_exit", processed=processed)
            clear_context()
            await job.worker_exited()
