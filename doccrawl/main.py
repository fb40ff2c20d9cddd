"""Command-line entrypoint for running crawls."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from doccrawl.errors import CrawlError
from doccrawl.observability.log import configure_logging
from doccrawl.orchestrator.progress import ProgressSnapshot
from doccrawl.service import CrawlService
from doccrawl.settings import load_settings, logging_config_path


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="doccrawl", description="Documentation site crawler")
    parser.add_argument("--settings", type=Path, help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Crawl one or more seed URLs until the job finishes")
    crawl.add_argument("urls", nargs="*", help="Seed URLs")
    crawl.add_argument("--from-job", help="Re-crawl the seeds of an earlier job, reusing cached pages")
    crawl.add_argument("--workers", type=int, dest="max_workers", help="Concurrent workers (1-10)")
    crawl.add_argument("--page-limit", type=int, dest="page_limit_per_seed", help="Unique pages per seed")
    crawl.add_argument("--loose-paths", action="store_true", help="Plain prefix path matching")
    crawl.add_argument("--skip-cache", action="store_true", help="Always render, ignoring stored pages")
    crawl.add_argument("--follow-external", action="store_true", help="Follow links leaving the seed scope")
    crawl.add_argument("--max-hops", type=int, dest="max_external_hops", help="External hop limit (1-5)")
    crawl.add_argument("--timeout-ms", type=int, dest="render_timeout_ms", help="Render timeout per page")
    crawl.add_argument("--wait-for", action="append", dest="wait_hints", help="CSS selector to wait for")
    crawl.add_argument("--incognito", action="store_true", help="Render without a persistent browser profile")
    crawl.add_argument("--no-sitemap", action="store_true", help="Skip sitemap discovery")
    crawl.add_argument("--quiet", action="store_true", help="Do not print progress lines")
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "max_workers": args.max_workers,
        "page_limit_per_seed": args.page_limit_per_seed,
        "strict_path_matching": False if args.loose_paths else None,
        "skip_cache": True if args.skip_cache else None,
        "follow_external_links": True if args.follow_external else None,
        "max_external_hops": args.max_external_hops,
        "render_timeout_ms": args.render_timeout_ms,
        "wait_hints": args.wait_hints,
        "session_mode": "incognito" if args.incognito else None,
        "use_sitemap": False if args.no_sitemap else None,
    }


def _print_progress(snapshot: ProgressSnapshot) -> None:
    print(
        f"[{snapshot.status}] found={snapshot.pages_found} processed={snapshot.pages_processed} "
        f"failed={snapshot.pages_failed} queued={snapshot.queue_size} in_progress={len(snapshot.in_progress_urls)}",
        file=sys.stderr,
    )


async def run_crawl(args: argparse.Namespace, settings: Dict[str, Any], service: Optional[CrawlService] = None) -> Dict[str, Any]:
    """Execute the crawl command end-to-end and return the final job record."""
    if not args.urls and not args.from_job:
        raise SystemExit("crawl needs at least one URL or --from-job")
    service = service or CrawlService.from_settings(settings)
    async with service:
        if not args.quiet:
            service.on_progress(_print_progress)
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, service.cancel)
        try:
            if args.from_job:
                job_id = await service.recrawl(args.from_job, **_overrides(args))
            else:
                job_id = await service.start(args.urls, **_overrides(args))
        except CrawlError as exc:
            raise SystemExit(f"Failed to start crawl: {exc}")
        job = await service.wait()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
    record = job.model_dump(mode="json") if job is not None else {"id": job_id}
    print(json.dumps(record, indent=2))
    return record


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.settings)
    configure_logging(logging_config_path(settings))

    if args.command == "crawl":
        asyncio.run(run_crawl(args, settings))


if __name__ == "__main__":
    main()
