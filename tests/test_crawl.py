import asyncio
import json

import pytest

from doccrawl.errors import AlreadyRunning, InvalidSeed, StorageFailure
from doccrawl.orchestrator.jobs import CrawlJob
from doccrawl.parse.discovery import Discovery
from doccrawl.quality.hashing import content_hash
from doccrawl.service import CrawlService
from doccrawl.storage.layout import DataLayout
from doccrawl.storage.models import JobStatus
from doccrawl.storage.store import SQLitePageStore

SEED = "https://docs.example.com/docs"


async def _eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _site(html_page, count=2):
    links = [f"/docs/p{index}" for index in range(1, count + 1)]
    pages = {SEED: html_page("Index", links, title="Docs")}
    for index in range(1, count + 1):
        pages[f"{SEED}/p{index}"] = html_page(f"Page number {index}")
    return pages


def _metrics(service, job_id):
    return json.loads(service.layout.metrics_file(job_id).read_text())["counters"]


def test_enqueue_is_idempotent_across_url_forms(store, crawl_options, fake_renderer):
    job = CrawlJob([SEED], crawl_options(), store=store, renderer=fake_renderer({}), discovery=Discovery())
    job.canonical_seeds = [SEED]

    assert job.enqueue("https://docs.example.com/docs/a") is True
    assert job.enqueue("HTTP://www.Docs.example.com/docs/a/#top") is False
    assert job.enqueue("https://docs.example.com/blog") is False
    assert job.frontier.queued() == ["https://docs.example.com/docs/a"]
    assert job.frontier.fetch_url("https://docs.example.com/docs/a") == "https://docs.example.com/docs/a"


def test_crawl_saves_every_in_scope_page(make_service, html_page):
    pages = _site(html_page)
    pages[SEED] = html_page("Index", ["/docs/p1", "/docs/p2", "/blog/post"])
    pages["https://docs.example.com/blog/post"] = html_page("Blog")
    service, renderer = make_service(pages)

    async def _run():
        async with service:
            job_id = await service.start(SEED)
            record = await service.wait()
            return job_id, record, await service.get_pages(job_id)

    job_id, record, saved = asyncio.run(_run())
    assert record.id == job_id
    assert record.status is JobStatus.COMPLETED
    assert (record.pages_found, record.pages_processed, record.pages_failed) == (3, 3, 0)
    assert sorted(page.canonical_url for page in saved) == [SEED, f"{SEED}/p1", f"{SEED}/p2"]
    assert not any("blog" in url for url in renderer.calls)
    assert service.registry.get_active() is None


def test_duplicate_content_is_folded_into_alternate_urls(make_service, html_page):
    pages = {
        "https://docs.example.com/api": html_page("API home", ["/api/a", "/api/b"]),
        "https://docs.example.com/api/a": html_page("Same body"),
        "https://docs.example.com/api/b": html_page("Same body"),
    }
    service, _ = make_service(pages)

    async def _run():
        async with service:
            job_id = await service.start("https://docs.example.com/api", max_workers=1)
            record = await service.wait()
            return record, await service.get_pages(job_id), _metrics(service, job_id)

    record, saved, counters = asyncio.run(_run())
    assert record.pages_found == 3
    assert record.pages_processed == 2
    assert record.pages_failed == 0
    assert len(saved) == 2
    shared = next(page for page in saved if page.url.endswith("/api/a"))
    assert shared.alternate_urls == ["https://docs.example.com/api/a", "https://docs.example.com/api/b"]
    assert counters["duplicates"] == 1
    assert counters["pages_saved"] == 2


@pytest.mark.parametrize("workers", [5, 10])
def test_concurrent_identical_renders_save_one_page(make_service, html_page, workers):
    pages = {
        "https://docs.example.com/api": html_page("API home", ["/api/a", "/api/b"]),
        "https://docs.example.com/api/a": html_page("Same body"),
        "https://docs.example.com/api/b": html_page("Same body"),
    }
    service, renderer = make_service(pages, delay=0.02)

    async def _run():
        async with service:
            job_id = await service.start("https://docs.example.com/api", max_workers=workers)
            record = await service.wait()
            return record, await service.get_pages(job_id)

    record, saved = asyncio.run(_run())
    assert len(renderer.calls) == 3
    assert (record.pages_found, record.pages_processed, record.pages_failed) == (3, 2, 0)
    assert len(saved) == 2
    assert sorted(len(page.alternate_urls) for page in saved) == [1, 2]
    shared = next(page for page in saved if len(page.alternate_urls) == 2)
    assert sorted(shared.alternate_urls) == ["https://docs.example.com/api/a", "https://docs.example.com/api/b"]


@pytest.mark.parametrize("workers", [1, 5, 10])
def test_page_limit_is_exact_under_concurrency(make_service, html_page, workers):
    service, renderer = make_service(_site(html_page, count=5), delay=0.01)

    async def _run():
        async with service:
            job_id = await service.start(SEED, max_workers=workers, page_limit_per_seed=2)
            record = await service.wait()
            return record, await service.get_pages(job_id)

    record, saved = asyncio.run(_run())
    assert len(saved) == 2
    assert record.pages_processed == 2
    assert record.status is JobStatus.COMPLETED


def test_page_limit_applies_per_seed(make_service, html_page):
    pages = {
        "https://a.example.com/docs": html_page("A", ["/docs/1", "/docs/2"]),
        "https://a.example.com/docs/1": html_page("A1"),
        "https://a.example.com/docs/2": html_page("A2"),
        "https://b.example.com/guide": html_page("B", ["/guide/1"]),
        "https://b.example.com/guide/1": html_page("B1"),
    }
    service, _ = make_service(pages)

    async def _run():
        async with service:
            job_id = await service.start(
                ["https://a.example.com/docs", "https://b.example.com/guide"], page_limit_per_seed=2
            )
            await service.wait()
            return await service.get_pages(job_id)

    saved = asyncio.run(_run())
    hosts = sorted(page.canonical_url.split("/")[2] for page in saved)
    assert hosts == ["a.example.com", "a.example.com", "b.example.com", "b.example.com"]


def test_external_links_respect_hop_limit(make_service, html_page):
    pages = {
        SEED: html_page("Index", ["https://other.org/x"]),
        "https://other.org/x": html_page("Other", ["https://third.net/y"]),
        "https://third.net/y": html_page("Third"),
    }
    service, renderer = make_service(pages)

    async def _run():
        async with service:
            await service.start(SEED, follow_external_links=True, max_external_hops=1)
            return await service.wait()

    record = asyncio.run(_run())
    assert record.pages_processed == 2
    assert any("other.org" in url for url in renderer.calls)
    assert not any("third.net" in url for url in renderer.calls)


def test_render_failure_is_recorded_and_crawl_continues(make_service, html_page):
    pages = _site(html_page)
    service, _ = make_service(pages, fail=[f"{SEED}/p2"])

    async def _run():
        async with service:
            await service.start(SEED)
            record = await service.wait()
            return record, await service.error_logs()

    record, logs = asyncio.run(_run())
    assert record.status is JobStatus.COMPLETED_WITH_ERRORS
    assert (record.pages_processed, record.pages_failed) == (2, 1)
    assert record.errors[0].url == f"{SEED}/p2"
    assert record.errors[0].message == "RenderFailure: renderer crashed"
    assert logs[0].source == "crawler"
    assert logs[0].context["canonical_url"] == f"{SEED}/p2"


class FlakyStore(SQLitePageStore):
    async def save_page(self, job_id, url, *args, **kwargs):
        if url.endswith("/p1"):
            raise StorageFailure("disk full")
        return await super().save_page(job_id, url, *args, **kwargs)


def test_storage_failure_is_recorded_per_url(tmp_path, html_page, fake_renderer):
    service = CrawlService(
        store=FlakyStore(tmp_path / "flaky.db"),
        renderer=fake_renderer(_site(html_page)),
        discovery=Discovery(),
        layout=DataLayout(root=tmp_path / "data"),
        settings={"crawl": {"request_delay_ms": 0, "idle_poll_ms": 5, "use_sitemap": False}},
    )

    async def _run():
        async with service:
            job_id = await service.start(SEED)
            return await service.wait(), _metrics(service, job_id)

    record, counters = asyncio.run(_run())
    assert record.status is JobStatus.COMPLETED_WITH_ERRORS
    assert record.pages_failed == 1
    assert record.errors[0].message == "StorageFailure: disk full"
    assert counters["storage_failures"] == 1


def test_cancel_interrupts_without_recording_errors(make_service, html_page):
    pages = _site(html_page)
    service, renderer = make_service(pages, hang=[f"{SEED}/p1"])

    async def _run():
        async with service:
            await service.start(SEED, render_timeout_ms=200)
            await _eventually(lambda: any(url.endswith("/p1") for url in renderer.calls))
            assert service.cancel() is True
            return await service.wait()

    record = asyncio.run(_run())
    assert record.status is JobStatus.INTERRUPTED
    assert record.pages_failed == 0
    assert record.errors == []
    assert service.cancel() is False


def test_paused_job_renders_nothing_until_resumed(make_service, html_page):
    service, renderer = make_service(_site(html_page))
    reports = []

    async def _run():
        async with service:
            service.on_progress(reports.append)
            await service.start(SEED)
            assert service.pause() is True
            await asyncio.sleep(0.05)
            assert renderer.calls == []
            assert reports == []
            assert service.resume() is True
            return await service.wait()

    record = asyncio.run(_run())
    assert record.status is JobStatus.COMPLETED
    assert record.pages_processed == 3
    assert reports[-1].status == "completed"


def test_completion_runs_once_when_workers_exit_together(store, crawl_options, fake_renderer):
    async def _run():
        job = CrawlJob([SEED], crawl_options(), store=store, renderer=fake_renderer({}), discovery=Discovery())
        finished = []
        job.add_terminal_callback(finished.append)
        job.active_workers = 4
        await asyncio.gather(*(job.worker_exited() for _ in range(4)))
        await job.wait()
        return job, finished

    job, finished = asyncio.run(_run())
    assert finished == [job]
    assert job.status is JobStatus.COMPLETED


def test_second_crawl_is_served_from_cache(make_service, html_page):
    service, renderer = make_service(_site(html_page))

    async def _run():
        async with service:
            await service.start(SEED)
            await service.wait()
            renderer.calls.clear()
            job_id = await service.start(SEED)
            record = await service.wait()
            return record, await service.get_pages(job_id), _metrics(service, job_id)

    record, saved, counters = asyncio.run(_run())
    assert renderer.calls == []
    assert record.pages_processed == 3
    assert len(saved) == 3
    assert counters["cache_hits"] == 3
    assert counters["pages_rendered"] == 0


def test_skip_cache_forces_rendering(make_service, html_page):
    service, renderer = make_service(_site(html_page))

    async def _run():
        async with service:
            await service.start(SEED)
            await service.wait()
            renderer.calls.clear()
            await service.start(SEED, skip_cache=True)
            await service.wait()

    asyncio.run(_run())
    assert len(renderer.calls) == 3


def test_cached_page_without_html_keeps_cached_content(make_service, html_page):
    fresh = html_page("Fresh body")
    service, renderer = make_service({SEED: fresh})

    async def _run():
        async with service:
            old = await service.store.create_job([SEED], [SEED])
            await service.store.save_page(old.id, SEED, SEED, "Cached body", content_hash=content_hash("Cached body"))
            job_id = await service.start(SEED)
            await service.wait()
            return await service.get_pages(job_id), _metrics(service, job_id)

    saved, counters = asyncio.run(_run())
    assert renderer.calls == [SEED]
    assert saved[0].content == "Cached body"
    assert saved[0].html == fresh
    assert counters["cache_html_misses"] == 1


def test_only_one_crawl_runs_at_a_time(make_service, html_page):
    service, _ = make_service(_site(html_page), delay=0.05)

    async def _run():
        async with service:
            job_id = await service.start(SEED)
            status = service.get_status()
            assert status.job_id == job_id
            with pytest.raises(AlreadyRunning):
                await service.start("https://other.example.com/docs")
            with pytest.raises(AlreadyRunning):
                await service.delete_job(job_id)
            await service.wait()
            assert service.get_status() is None
            next_id = await service.start(SEED)
            await service.wait()
            return job_id, next_id

    job_id, next_id = asyncio.run(_run())
    assert job_id != next_id


def test_invalid_seeds(make_service, html_page):
    service, _ = make_service(_site(html_page))

    async def _run():
        async with service:
            with pytest.raises(InvalidSeed):
                await service.start("not a url")
            assert service.registry.get_active() is None
            assert await service.list_jobs() == []

            await service.start(["not a url", "https://Docs.example.com/docs/"])
            return await service.wait()

    record = asyncio.run(_run())
    assert record.seed_urls == ["https://Docs.example.com/docs/"]
    assert record.canonical_seed_urls == [SEED]
    assert record.pages_processed == 3


def test_wait_after_rejected_start_returns_previous_job(make_service, html_page):
    service, _ = make_service(_site(html_page))

    async def _run():
        async with service:
            with pytest.raises(InvalidSeed):
                await service.start("not a url")
            assert await asyncio.wait_for(service.wait(), timeout=1.0) is None

            job_id = await service.start(SEED)
            await service.wait()
            with pytest.raises(InvalidSeed):
                await service.start("not a url")
            record = await asyncio.wait_for(service.wait(), timeout=1.0)
            return job_id, record

    job_id, record = asyncio.run(_run())
    assert record.id == job_id
    assert record.status is JobStatus.COMPLETED


def test_failing_progress_sink_does_not_stop_the_crawl(make_service, html_page):
    service, _ = make_service(_site(html_page))
    seen = []

    def broken(snapshot):
        raise RuntimeError("sink down")

    async def _run():
        async with service:
            service.on_progress(broken)
            unsubscribe = service.on_progress(seen.append)
            await service.start(SEED)
            record = await service.wait()
            unsubscribe()
            return record

    record = asyncio.run(_run())
    assert record.status is JobStatus.COMPLETED
    assert seen[-1].pages_processed == 3
    assert seen[-1].to_dict()["job_id"] == record.id
    assert service.progress.sink_count == 1


def test_recrawl_reuses_previous_seeds(make_service, html_page):
    service, _ = make_service(_site(html_page))

    async def _run():
        async with service:
            first = await service.start(SEED)
            await service.wait()
            second = await service.recrawl(first)
            record = await service.wait()
            return first, second, record

    first, second, record = asyncio.run(_run())
    assert first != second
    assert record.id == second
    assert record.seed_urls == [SEED]
