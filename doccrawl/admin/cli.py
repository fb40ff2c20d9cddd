"""Administrative CLI utilities over the stored jobs, pages and error log."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from doccrawl.observability.errorlog import REPORT_FORMATS
from doccrawl.observability.log import configure_logging
from doccrawl.service import CrawlService
from doccrawl.settings import load_settings, logging_config_path
from doccrawl.storage.models import Job, Page
from doccrawl.storage.writers import EXPORT_FORMATS


def _job_summary(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status.value,
        "seed_urls": job.seed_urls,
        "pages_found": job.pages_found,
        "pages_processed": job.pages_processed,
        "pages_failed": job.pages_failed,
        "created_at": job.created_at.isoformat(),
    }


def _page_summary(page: Page) -> Dict[str, Any]:
    return {
        "id": page.id,
        "job_id": page.job_id,
        "url": page.url,
        "alternate_urls": page.alternate_urls[1:],
        "content_length": page.content_length,
        "title": (page.metadata or {}).get("title"),
    }


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


async def cmd_jobs(service: CrawlService, args: argparse.Namespace) -> None:
    _emit([_job_summary(job) for job in await service.list_jobs()])


async def cmd_pages(service: CrawlService, args: argparse.Namespace) -> None:
    _emit([_page_summary(page) for page in await service.get_pages(args.job_id)])


async def cmd_search(service: CrawlService, args: argparse.Namespace) -> None:
    _emit([_page_summary(page) for page in await service.search(args.query)])


async def cmd_delete_job(service: CrawlService, args: argparse.Namespace) -> None:
    deleted = await service.delete_job(args.job_id)
    _emit({"job_id": args.job_id, "deleted": deleted})
    if not deleted:
        raise SystemExit(1)


async def cmd_errors(service: CrawlService, args: argparse.Namespace) -> None:
    if args.clear:
        await service.clear_error_logs()
        _emit({"cleared": True})
        return
    if args.count:
        _emit({"count": await service.error_count()})
        return
    if args.report:
        report = await service.error_report(args.format)
        if args.format == "text":
            print(report)
        else:
            _emit(report)
        return
    entries = await service.error_logs()
    _emit([entry.model_dump(mode="json", exclude={"stack"}) for entry in entries[: args.limit]])


async def cmd_export(service: CrawlService, args: argparse.Namespace) -> None:
    if await service.get_job(args.job_id) is None:
        raise SystemExit(f"Job not found: {args.job_id}")
    path = await service.export(args.job_id, args.format, Path(args.output) if args.output else None)
    _emit({"job_id": args.job_id, "format": args.format, "path": str(path)})


COMMANDS = {
    "jobs": cmd_jobs,
    "pages": cmd_pages,
    "search": cmd_search,
    "delete-job": cmd_delete_job,
    "errors": cmd_errors,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="doccrawl-admin", description="Administration commands")
    parser.add_argument("--settings", type=Path, help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("jobs", help="List crawl jobs, newest first")

    pages = sub.add_parser("pages", help="List the pages saved by a job")
    pages.add_argument("job_id")

    search = sub.add_parser("search", help="Find pages whose URL contains a substring")
    search.add_argument("query")

    delete = sub.add_parser("delete-job", help="Delete a job and its pages")
    delete.add_argument("job_id")

    errors = sub.add_parser("errors", help="Show or clear the persistent error log")
    errors.add_argument("--clear", action="store_true")
    errors.add_argument("--count", action="store_true", help="Print only the number of logged errors")
    errors.add_argument("--report", action="store_true", help="Print a diagnostic report grouped by source")
    errors.add_argument("--format", choices=REPORT_FORMATS, default="json", help="Report format")
    errors.add_argument("--limit", type=int, default=50)

    export = sub.add_parser("export", help="Export the pages of a job")
    export.add_argument("job_id")
    export.add_argument("--format", choices=EXPORT_FORMATS, default="jsonl")
    export.add_argument("--output", help="Destination file (defaults to the exports directory)")

    return parser


async def _dispatch(args: argparse.Namespace, settings: Dict[str, Any]) -> None:
    async with CrawlService.from_settings(settings) as service:
        await COMMANDS[args.command](service, args)


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.settings)
    configure_logging(logging_config_path(settings))
    asyncio.run(_dispatch(args, settings))


if __name__ == "__main__":
    main()
