"""Crawl job state machine: queue ownership, limits and exactly-once completion."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from doccrawl.errors import CrawlError, DiscoveryFailure, InvalidSeed, StorageFailure, describe_error
from doccrawl.fetch.renderer import Renderer
from doccrawl.normalize.urls import canonicalize, matching_seed
from doccrawl.observability.errorlog import ErrorLogger
from doccrawl.observability.metrics import MetricsRegistry
from doccrawl.observability.tracing import log_url_failure
from doccrawl.orchestrator.options import CrawlOptions
from doccrawl.orchestrator.pipeline import FetchPipeline
from doccrawl.orchestrator.progress import ProgressReporter, ProgressSnapshot
from doccrawl.orchestrator.queue import UrlFrontier
from doccrawl.orchestrator.workers import WorkerPool
from doccrawl.parse.discovery import Discovery
from doccrawl.quality.dedup import CommitOutcome, Deduplicator
from doccrawl.storage.layout import DataLayout
from doccrawl.storage.models import Job, JobError, JobStatus
from doccrawl.storage.store import PageStore

LOGGER = structlog.get_logger(__name__)

TerminalCallback = Callable[["CrawlJob"], None]


class CrawlJob:
    """One crawl run: owns the frontier and the per-seed accounting.

    ``start()`` returns as soon as the workers are spawned; callers poll
    ``snapshot()`` or await ``wait()``. The last worker to leave its loop runs
    the completion routine, which is guarded so it executes once.
    """

    def __init__(
        self,
        seeds: Sequence[str],
        options: CrawlOptions,
        *,
        store: PageStore,
        renderer: Renderer,
        discovery: Discovery,
        progress: Optional[ProgressReporter] = None,
        error_logger: Optional[ErrorLogger] = None,
        layout: Optional[DataLayout] = None,
    ) -> None:
        self.seed_urls = list(seeds)
        self.options = options
        self.store = store
        self.renderer = renderer
        self.discovery = discovery
        self.progress = progress or ProgressReporter()
        self.error_logger = error_logger
        self.layout = layout
        self.metrics = MetricsRegistry()

        self.canonical_seeds: List[str] = []
        self.job_id: Optional[str] = None
        self.record: Optional[Job] = None
        self.status = JobStatus.PENDING
        self.errors: List[JobError] = []

        self.frontier = UrlFrontier()
        self.completed_per_seed: Dict[str, int] = defaultdict(int)
        self.is_paused = False
        self.is_cancelled = False
        self.active_workers = 0

        self.deduplicator: Optional[Deduplicator] = None
        self.pipeline = FetchPipeline(self)
        self._pool = WorkerPool(self)
        self._completion_triggered = False
        self._terminal_callbacks: List[TerminalCallback] = []
        self._done = asyncio.Event()
        self._sync_lock = asyncio.Lock()
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------ lifecycle

    def add_terminal_callback(self, callback: TerminalCallback) -> None:
        self._terminal_callbacks.append(callback)

    def _canonical_seed_pairs(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        for seed in self.seed_urls:
            canonical = canonicalize(seed)
            if canonical is None:
                LOGGER.warning("invalid_seed_skipped", seed=seed)
                continue
            if canonical not in [item[1] for item in pairs]:
                pairs.append((seed, canonical))
        return pairs

    async def start(self) -> str:
        """Create the job record, seed the queue and spawn the workers."""
        pairs = self._canonical_seed_pairs()
        if not pairs:
            raise InvalidSeed(self.seed_urls)
        self.seed_urls = [seed for seed, _ in pairs]
        self.canonical_seeds = [canonical for _, canonical in pairs]

        self.record = await self.store.create_job(self.seed_urls, self.canonical_seeds)
        self.job_id = self.record.id
        self.deduplicator = Deduplicator(
            self.store,
            self.job_id,
            has_capacity=self.has_capacity_for_seed,
            on_saved=self._record_saved,
        )
        self._started_at = asyncio.get_running_loop().time()
        try:
            self.record = await self.store.update_job(self.job_id, status=JobStatus.IN_PROGRESS)
            self.status = JobStatus.IN_PROGRESS
            for seed, canonical in pairs:
                self.frontier.push(canonical, 0, seed)
            for url in await self._initial_urls():
                self.enqueue(url, 0)
            await self._sync_record()
            self._pool.spawn(self.options.max_workers)
        except Exception as exc:
            await self._fail_start(exc)
            raise
        LOGGER.info(
            "job_started",
            job_id=self.job_id,
            seeds=self.canonical_seeds,
            queued=self.frontier.queue_size,
            workers=self.options.max_workers,
        )
        return self.job_id

    async def _initial_urls(self) -> List[str]:
        if not self.options.use_sitemap:
            return []
        try:
            return await self.discovery.discover_seed_urls(
                self.seed_urls, strict=self.options.strict_path_matching
            )
        except DiscoveryFailure as exc:
            LOGGER.warning("initial_discovery_failed", job_id=self.job_id, reason=str(exc))
            return []

    async def _fail_start(self, exc: BaseException) -> None:
        LOGGER.error("job_start_failed", job_id=self.job_id, error=describe_error(exc))
        self._completion_triggered = True
        self.status = JobStatus.FAILED
        try:
            self.record = await self.store.update_job(self.job_id, status=JobStatus.FAILED)
        except StorageFailure as update_exc:
            LOGGER.error("job_status_update_failed", job_id=self.job_id, error=str(update_exc))
        self._finish()

    def pause(self) -> None:
        self.is_paused = True
        LOGGER.info("job_paused", job_id=self.job_id)

    def resume(self) -> None:
        self.is_paused = False
        LOGGER.info("job_resumed", job_id=self.job_id)

    def cancel(self) -> None:
        self.is_cancelled = True
        LOGGER.info("job_cancelled", job_id=self.job_id, in_flight=len(self.frontier.in_progress))

    async def wait(self) -> Optional[Job]:
        """Block until the job reaches a terminal state and return its record."""
        await self._done.wait()
        return self.record

    @property
    def done(self) -> bool:
        return self._done.is_set()

    # -------------------------------------------------------------- queue

    def seed_for(self, url: str) -> Optional[str]:
        return matching_seed(url, self.canonical_seeds, self.options.strict_path_matching)

    def enqueue(self, url: str, depth: int = 0) -> bool:
        """Admit ``url`` to the queue; a no-op for known, out-of-scope or over-limit URLs."""
        canonical = canonicalize(url)
        if canonical is None or canonical in self.frontier:
            return False
        seed = self.seed_for(canonical)
        if seed is None:
            depth = max(depth, 1)
            if not self.options.follow_external_links or depth > self.options.max_external_hops:
                return False
        else:
            depth = 0
            if not self.has_capacity_for_seed(seed):
                return False
        return self.frontier.push(canonical, depth, url)

    def has_capacity_for_seed(self, seed: Optional[str]) -> bool:
        limit = self.options.page_limit_per_seed
        if limit is None or seed is None:
            return True
        return self.completed_per_seed[seed] < limit

    def is_globally_exhausted(self) -> bool:
        if self.is_cancelled:
            return True
        if self.options.page_limit_per_seed is None:
            return False
        return all(not self.has_capacity_for_seed(seed) for seed in self.canonical_seeds)

    def next_url(self) -> Optional[str]:
        """Claim the next URL whose seed still has capacity.

        Queued URLs of seeds that reached their page limit are dropped here.
        """
        while True:
            head = self.frontier.peek()
            if head is None:
                return None
            if self.has_capacity_for_seed(self.seed_for(head)):
                return self.frontier.claim()
            self.frontier.drop_head()
            LOGGER.debug("queued_url_dropped", url=head, reason="page_limit")

    def _record_saved(self, seed: Optional[str]) -> None:
        if seed is not None:
            self.completed_per_seed[seed] += 1

    # ------------------------------------------------------------- workers

    async def process_url(self, url: str) -> None:
        """Run the pipeline for a claimed URL and settle it into its final set."""
        try:
            outcome = await self.pipeline.run(url)
        except Exception as exc:  # noqa: BLE001
            await self._record_failure(url, exc)
        else:
            if outcome is CommitOutcome.SAVED:
                self.frontier.complete(url)
            elif outcome is CommitOutcome.FOLDED:
                self.frontier.fold(url)
            else:
                self.frontier.release(url)
        await self._sync_record()
        self.progress.report(self.snapshot(), paused=self.is_paused)

    async def _record_failure(self, url: str, exc: BaseException) -> None:
        if self.is_cancelled:
            self.frontier.release(url)
            LOGGER.info("error_ignored_after_cancel", url=url, error=describe_error(exc))
            return
        self.frontier.fail(url)
        message = describe_error(exc)
        fetch_url = self.frontier.fetch_url(url)
        self.errors.append(JobError(url=fetch_url, canonical_url=url, message=message))
        if isinstance(exc, StorageFailure):
            self.metrics.incr("storage_failures")
        else:
            self.metrics.incr("render_failures")
        log_url_failure(url=url, reason=message)
        if not isinstance(exc, CrawlError):
            LOGGER.exception("unexpected_worker_error", url=url)
        if self.error_logger is not None:
            await self.error_logger.log(
                "crawler",
                exc,
                {"job_id": self.job_id, "url": fetch_url, "canonical_url": url},
            )

    async def worker_exited(self) -> None:
        self.active_workers -= 1
        if self.active_workers > 0 or self._completion_triggered:
            return
        self._completion_triggered = True
        await self._complete()

    # ---------------------------------------------------------- completion

    def _terminal_status(self) -> JobStatus:
        if self.is_cancelled:
            return JobStatus.INTERRUPTED
        if self.frontier.failed:
            return JobStatus.COMPLETED_WITH_ERRORS
        return JobStatus.COMPLETED

    async def _complete(self) -> None:
        self.status = self._terminal_status()
        if self._started_at is not None:
            elapsed = asyncio.get_running_loop().time() - self._started_at
            self.metrics.incr("run_duration_ms", int(elapsed * 1000))
        try:
            await self._sync_record(status=self.status)
        except StorageFailure as exc:
            LOGGER.error("job_status_update_failed", job_id=self.job_id, error=str(exc))
        if self.layout is not None and self.job_id is not None:
            try:
                self.metrics.export(path=self.layout.metrics_file(self.job_id), run_id=self.job_id)
            except OSError as exc:
                LOGGER.warning("metrics_export_failed", job_id=self.job_id, error=str(exc))
        LOGGER.info(
            "job_finished",
            job_id=self.job_id,
            status=self.status.value,
            pages_processed=len(self.frontier.completed),
            pages_failed=len(self.frontier.failed),
            metrics=self.metrics.snapshot(),
        )
        self.progress.report(self.snapshot())
        self._finish()

    def _finish(self) -> None:
        for callback in list(self._terminal_callbacks):
            try:
                callback(self)
            except Exception:  # noqa: BLE001
                LOGGER.exception("terminal_callback_failed", job_id=self.job_id)
        self._done.set()

    # ------------------------------------------------------------ reporting

    async def _sync_record(self, status: Optional[JobStatus] = None) -> None:
        if self.job_id is None:
            return
        async with self._sync_lock:
            fields = {
                "pages_found": self.frontier.pages_found,
                "pages_processed": len(self.frontier.completed),
                "pages_failed": len(self.frontier.failed),
                "errors": list(self.errors),
            }
            if status is not None:
                fields["status"] = status
            try:
                self.record = await self.store.update_job(self.job_id, **fields)
            except StorageFailure as exc:
                if status is not None:
                    raise
                LOGGER.warning("job_progress_update_failed", job_id=self.job_id, error=str(exc))

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=self.job_id or "",
            status=self.status.value,
            pages_found=self.frontier.pages_found,
            pages_processed=len(self.frontier.completed),
            pages_failed=len(self.frontier.failed),
            queue_size=self.frontier.queue_size,
            in_progress_urls=sorted(self.frontier.in_progress),
        )
