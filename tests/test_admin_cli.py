import asyncio
import json

import pytest

from doccrawl.admin import cli
from doccrawl.storage.models import JobStatus
from doccrawl.storage.store import SQLitePageStore


@pytest.fixture()
def prepared_data(tmp_path):
    data_root = tmp_path / "data"
    settings_path = tmp_path / "settings.toml"
    settings_path.write_text(
        f'[app]\ndata_root = "{data_root.as_posix()}"\n\n'
        '[render]\nbackend = "httpx"\n\n'
        f'[logging]\nconfig_path = "{(tmp_path / "missing.yaml").as_posix()}"\n',
        encoding="utf-8",
    )
    data_root.mkdir()
    store = SQLitePageStore(data_root / "doccrawl.db")

    async def _seed():
        job = await store.create_job(["https://docs.example.com/guide"], ["https://docs.example.com/guide"])
        page = await store.save_page(
            job.id,
            "https://docs.example.com/guide/install",
            "https://docs.example.com/guide/install",
            "Run the installer.",
            html="<p>Run the installer.</p>",
            content_hash="h1",
            metadata={"title": "Install"},
        )
        await store.update_page_alternate_urls(page.id, "https://docs.example.com/guide/setup")
        await store.update_job(job.id, status=JobStatus.COMPLETED, pages_found=1, pages_processed=1)
        await store.save_error_log(source="crawler", message="boom", context={"url": "https://docs.example.com/x"})
        return job.id

    job_id = asyncio.run(_seed())
    return settings_path, data_root, job_id


def _run_cli(capsys, settings_path, *argv):
    cli.main(["--settings", str(settings_path), *argv])
    return json.loads(capsys.readouterr().out)


def test_jobs_and_pages(capsys, prepared_data):
    settings_path, _, job_id = prepared_data
    jobs = _run_cli(capsys, settings_path, "jobs")
    assert [job["id"] for job in jobs] == [job_id]
    assert jobs[0]["status"] == "completed"

    pages = _run_cli(capsys, settings_path, "pages", job_id)
    assert pages[0]["title"] == "Install"
    assert pages[0]["alternate_urls"] == ["https://docs.example.com/guide/setup"]


def test_search_matches_url_substring(capsys, prepared_data):
    settings_path, _, _ = prepared_data
    hits = _run_cli(capsys, settings_path, "search", "GUIDE/INSTALL")
    assert [hit["url"] for hit in hits] == ["https://docs.example.com/guide/install"]
    assert _run_cli(capsys, settings_path, "search", "nothing-here") == []


def test_export_defaults_to_exports_dir(capsys, prepared_data):
    settings_path, data_root, job_id = prepared_data
    result = _run_cli(capsys, settings_path, "export", job_id, "--format", "text")
    path = data_root / "exports" / f"job_{job_id}.txt"
    assert result["path"] == str(path)
    assert "URL: https://docs.example.com/guide/install" in path.read_text()


def test_errors_listing_and_clear(capsys, prepared_data):
    settings_path, _, _ = prepared_data
    entries = _run_cli(capsys, settings_path, "errors")
    assert entries[0]["message"] == "boom"
    assert "stack" not in entries[0]
    assert _run_cli(capsys, settings_path, "errors", "--clear") == {"cleared": True}
    assert _run_cli(capsys, settings_path, "errors") == []


def test_delete_job(capsys, prepared_data):
    settings_path, _, job_id = prepared_data
    assert _run_cli(capsys, settings_path, "delete-job", job_id) == {"job_id": job_id, "deleted": True}
    with pytest.raises(SystemExit):
        cli.main(["--settings", str(settings_path), "delete-job", job_id])
    assert json.loads(capsys.readouterr().out)["deleted"] is False


def test_error_count_and_report(capsys, prepared_data):
    settings_path, _, _ = prepared_data
    assert _run_cli(capsys, settings_path, "errors", "--count") == {"count": 1}

    report = _run_cli(capsys, settings_path, "errors", "--report")
    assert report["summary"]["total_errors"] == 1
    assert report["summary"]["errors_by_source"] == {"crawler": 1}
    assert report["summary"]["oldest_error"] == report["summary"]["newest_error"]
    assert report["error_logs"][0]["context"] == {"url": "https://docs.example.com/x"}

    cli.main(["--settings", str(settings_path), "errors", "--report", "--format", "text"])
    text = capsys.readouterr().out
    assert "- Total errors: 1" in text
    assert "  - crawler: 1" in text
    assert "Message: boom" in text
