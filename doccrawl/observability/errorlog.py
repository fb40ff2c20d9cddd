"""Persistent error log backed by the page store."""
from __future__ import annotations

import json
import platform
import traceback
from collections import Counter
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, List, Optional, Union

import structlog

from doccrawl.storage.models import utc_now
from doccrawl.storage.store import SQLitePageStore

LOGGER = structlog.get_logger(__name__)

REPORT_FORMATS = ("json", "text")


class ErrorLogger:
    """Writes diagnostic records to the ``error_logs`` table.

    Logging an error must never raise: a failing store is reported through
    structlog and otherwise ignored.
    """

    def __init__(self, store: SQLitePageStore) -> None:
        self._store = store

    async def log(
        self,
        source: str,
        error: Union[BaseException, str],
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            message = error
            stack = None
        try:
            await self._store.save_error_log(
                source=source,
                message=message,
                stack=stack,
                context=context or {},
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("error_log_write_failed", source=source, reason=str(exc))

    async def cleanup(self) -> int:
        try:
            return await self._store.cleanup_old_error_logs()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("error_log_cleanup_failed", reason=str(exc))
            return 0

    async def count(self) -> int:
        return await self._store.count_error_logs()

    async def report(self) -> Dict[str, Any]:
        """Build a diagnostic report: environment, per-source summary and every entry.

        Entries are listed newest first, so the oldest error is the last one.
        """
        entries = await self._store.list_error_logs()
        total = await self._store.count_error_logs()
        by_source = Counter(entry.source or "unknown" for entry in entries)
        return {
            "report_generated": utc_now().isoformat(),
            "environment": _environment(),
            "summary": {
                "total_errors": total,
                "errors_by_source": dict(by_source),
                "oldest_error": entries[-1].timestamp.isoformat() if entries else None,
                "newest_error": entries[0].timestamp.isoformat() if entries else None,
            },
            "error_logs": [entry.model_dump(mode="json") for entry in entries],
        }


def _environment() -> Dict[str, str]:
    try:
        package_version = version("doccrawl")
    except PackageNotFoundError:
        package_version = "unknown"
    return {
        "doccrawl_version": package_version,
        "python_version": platform.python_version(),
        "platform": platform.platform(),
    }


def format_report(report: Dict[str, Any]) -> str:
    """Render a report from ``ErrorLogger.report`` as readable text."""
    summary = report["summary"]
    environment = report["environment"]
    lines: List[str] = [
        "# doccrawl diagnostic report",
        f"Generated: {report['report_generated']}",
        "",
        "## Environment",
        f"- doccrawl: {environment['doccrawl_version']}",
        f"- Python: {environment['python_version']}",
        f"- Platform: {environment['platform']}",
        "",
        "## Error summary",
        f"- Total errors: {summary['total_errors']}",
    ]
    if summary["oldest_error"]:
        lines.append(f"- Date range: {summary['oldest_error']} to {summary['newest_error']}")
    lines.append("- Errors by source:")
    for source, count in summary["errors_by_source"].items():
        lines.append(f"  - {source}: {count}")
    lines.extend(["", "## Error logs", ""])
    for entry in report["error_logs"]:
        lines.append(f"### {entry['timestamp']} [{entry['source']}]")
        lines.append(f"Message: {entry['message']}")
        if entry.get("context"):
            lines.append(f"Context: {json.dumps(entry['context'], indent=2)}")
        if entry.get("stack"):
            lines.extend(["Stack trace:", "```", entry["stack"].rstrip(), "```"])
        lines.extend(["", "---", ""])
    return "\n".join(lines)
