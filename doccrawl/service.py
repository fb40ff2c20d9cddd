"""Caller-facing crawl service with one method per operation."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from doccrawl.errors import AlreadyRunning, CrawlError
from doccrawl.fetch.renderer import DEFAULT_USER_AGENT, Renderer, build_renderer
from doccrawl.fetch.sitemap import SitemapFetcher, SitemapLimits
from doccrawl.observability.errorlog import REPORT_FORMATS, ErrorLogger, format_report
from doccrawl.orchestrator.jobs import CrawlJob
from doccrawl.orchestrator.options import CrawlOptions
from doccrawl.orchestrator.progress import ProgressReporter, ProgressSink, ProgressSnapshot
from doccrawl.orchestrator.registry import CrawlRegistry
from doccrawl.parse.discovery import Discovery
from doccrawl.storage.layout import DataLayout
from doccrawl.storage.models import ErrorLogEntry, Job, Page
from doccrawl.storage.store import SQLitePageStore
from doccrawl.storage.writers import write_export

LOGGER = structlog.get_logger(__name__)


class CrawlService:
    """Start, steer and inspect crawls; browse and export stored results.

    Use as an async context manager so stale error-log entries are pruned on
    entry and network clients are closed on exit.
    """

    def __init__(
        self,
        *,
        store: SQLitePageStore,
        renderer: Renderer,
        discovery: Discovery,
        layout: Optional[DataLayout] = None,
        settings: Optional[Dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.renderer = renderer
        self.discovery = discovery
        self.layout = layout
        self.settings = settings or {}
        self.progress = ProgressReporter()
        self.errors = ErrorLogger(store)
        self.registry = CrawlRegistry(self._build_job)
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "CrawlService":
        layout = DataLayout.from_settings(settings)
        store = SQLitePageStore(layout.db_path)
        renderer = build_renderer(settings, data_root=layout.root)
        user_agent = settings.get("render", {}).get("user_agent", DEFAULT_USER_AGENT)
        client = httpx.AsyncClient(headers={"User-Agent": user_agent}, follow_redirects=True)
        discovery_settings = settings.get("discovery", {})
        limits = SitemapLimits(
            root_timeout=discovery_settings.get("sitemap_timeout_seconds", 10.0),
            nested_timeout=discovery_settings.get("nested_sitemap_timeout_seconds", 5.0),
            total_timeout=discovery_settings.get("total_timeout_seconds", 30.0),
            max_depth=discovery_settings.get("max_sitemap_depth", 2),
        )
        discovery = Discovery(SitemapFetcher(client, limits))
        return cls(
            store=store,
            renderer=renderer,
            discovery=discovery,
            layout=layout,
            settings=settings,
            http_client=client,
        )

    async def __aenter__(self) -> "CrawlService":
        await self.errors.cleanup()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self.renderer.close()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _build_job(self, seeds: Sequence[str], options: CrawlOptions) -> CrawlJob:
        return CrawlJob(
            seeds,
            options,
            store=self.store,
            renderer=self.renderer,
            discovery=self.discovery,
            progress=self.progress,
            error_logger=self.errors,
            layout=self.layout,
        )

    # ------------------------------------------------------------ crawling

    def options(self, options: Optional[CrawlOptions] = None, **overrides: Any) -> CrawlOptions:
        if options is not None:
            merged = options.model_dump()
            merged.update({key: value for key, value in overrides.items() if value is not None})
            return CrawlOptions(**merged)
        return CrawlOptions.from_settings(self.settings, **overrides)

    async def start(
        self,
        seeds: Union[str, Sequence[str]],
        options: Optional[CrawlOptions] = None,
        **overrides: Any,
    ) -> str:
        """Start a crawl and return its job id without waiting for it to finish."""
        seed_list = [seeds] if isinstance(seeds, str) else list(seeds)
        return await self.registry.start(seed_list, self.options(options, **overrides))

    async def recrawl(self, job_id: str, options: Optional[CrawlOptions] = None, **overrides: Any) -> str:
        """Start a fresh job over the seeds of ``job_id``; cached pages are reused."""
        previous = await self.store.get_job(job_id)
        if previous is None:
            raise CrawlError(f"Job not found: {job_id}")
        return await self.start(previous.seed_urls, options, **overrides)

    def pause(self) -> bool:
        job = self.registry.get_active()
        if job is None:
            return False
        job.pause()
        return True

    def resume(self) -> bool:
        job = self.registry.get_active()
        if job is None:
            return False
        job.resume()
        return True

    def cancel(self) -> bool:
        return self.registry.cancel_active()

    def get_status(self) -> Optional[ProgressSnapshot]:
        job = self.registry.get_active()
        return job.snapshot() if job is not None else None

    def on_progress(self, sink: ProgressSink) -> Callable[[], None]:
        return self.progress.subscribe(sink)

    async def wait(self) -> Optional[Job]:
        """Wait for the active (or most recently started) job to finish."""
        job = self.registry.get_active() or self.registry.last_started
        if job is None:
            return None
        return await job.wait()

    # ------------------------------------------------------------- records

    async def list_jobs(self) -> List[Job]:
        return await self.store.list_jobs()

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def update_job(self, job_id: str, **fields: Any) -> Job:
        return await self.store.update_job(job_id, **fields)

    async def delete_job(self, job_id: str) -> bool:
        active = self.registry.get_active()
        if active is not None and active.job_id == job_id:
            raise AlreadyRunning(job_id)
        return await self.store.delete_job(job_id)

    async def get_pages(self, job_id: str) -> List[Page]:
        return await self.store.get_pages_by_job(job_id)

    async def search(self, query: str) -> List[Page]:
        return await self.store.search_pages(query)

    async def error_logs(self) -> List[ErrorLogEntry]:
        return await self.store.list_error_logs()

    async def error_count(self) -> int:
        return await self.errors.count()

    async def error_report(self, fmt: str = "json") -> Union[Dict[str, Any], str]:
        """Return the diagnostic report as a dict (``json``) or rendered text (``text``)."""
        if fmt not in REPORT_FORMATS:
            raise ValueError(f"Unsupported report format: {fmt}")
        report = await self.errors.report()
        return format_report(report) if fmt == "text" else report

    async def clear_error_logs(self) -> None:
        await self.store.clear_error_logs()

    async def export(self, job_id: str, fmt: str, path: Optional[Path] = None) -> Path:
        pages = await self.store.get_pages_by_job(job_id)
        if path is None:
            if self.layout is None:
                raise ValueError("An output path is required without a data layout")
            path = self.layout.export_file(job_id, fmt)
        written = write_export(path, pages, fmt)
        LOGGER.info("job_exported", job_id=job_id, format=fmt, pages=len(pages), path=str(written))
        return written
