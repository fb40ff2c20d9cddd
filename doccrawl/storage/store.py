"""Durable job and page records backed by SQLite."""
from __future__ import annotations

import abc
import asyncio
import contextlib
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar

import orjson
import structlog

from doccrawl.errors import StorageFailure
from doccrawl.storage.models import (
    ErrorLogEntry,
    Job,
    JobError,
    JobStatus,
    Page,
    PageStatus,
    utc_now,
)

LOGGER = structlog.get_logger(__name__)

ERROR_LOG_RETENTION = timedelta(days=30)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    seed_urls_json TEXT NOT NULL,
    canonical_seed_urls_json TEXT NOT NULL,
    status TEXT NOT NULL,
    pages_found INTEGER NOT NULL DEFAULT 0,
    pages_processed INTEGER NOT NULL DEFAULT 0,
    pages_failed INTEGER NOT NULL DEFAULT 0,
    errors_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);

CREATE TABLE IF NOT EXISTS pages (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    canonical_url TEXT NOT NULL,
    alternate_urls_json TEXT NOT NULL,
    content TEXT NOT NULL,
    content_hash TEXT,
    content_length INTEGER NOT NULL DEFAULT 0,
    html TEXT,
    markdown TEXT,
    metadata_json TEXT,
    status TEXT NOT NULL,
    extracted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pages_canonical_url ON pages(canonical_url);
CREATE INDEX IF NOT EXISTS idx_pages_job_id ON pages(job_id);
CREATE INDEX IF NOT EXISTS idx_pages_job_hash ON pages(job_id, content_hash);

CREATE TABLE IF NOT EXISTS error_logs (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    level TEXT NOT NULL,
    source TEXT NOT NULL,
    message TEXT NOT NULL,
    stack TEXT,
    context_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_error_logs_timestamp ON error_logs(timestamp);
"""

_JOB_COLUMNS = {
    "status": "status",
    "pages_found": "pages_found",
    "pages_processed": "pages_processed",
    "pages_failed": "pages_failed",
    "errors": "errors_json",
}


def _new_id() -> str:
    return str(uuid.uuid4())


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _iso(value: datetime) -> str:
    return value.isoformat()


class PageStore(abc.ABC):
    """Collaborator interface the crawl engine persists through."""

    @abc.abstractmethod
    async def create_job(self, seed_urls: Sequence[str], canonical_seed_urls: Sequence[str]) -> Job: ...

    @abc.abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> Job: ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]: ...

    @abc.abstractmethod
    async def get_page_by_canonical_url(self, canonical_url: str) -> Optional[Page]: ...

    @abc.abstractmethod
    async def get_page_by_content_hash(self, job_id: str, content_hash: str) -> Optional[Page]: ...

    @abc.abstractmethod
    async def save_page(
        self,
        job_id: str,
        url: str,
        canonical_url: str,
        content: str,
        status: PageStatus = PageStatus.SUCCESS,
        html: Optional[str] = None,
        content_hash: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        markdown: Optional[str] = None,
    ) -> Page: ...

    @abc.abstractmethod
    async def update_page_alternate_urls(self, page_id: str, new_url: str) -> Page: ...


class SQLitePageStore(PageStore):
    """SQLite implementation; each call opens its own connection on a worker thread."""

    def __init__(self, path: Path) -> None:
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.executescript(_SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            connection = sqlite3.connect(self._path, timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Cannot open page store {self._path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys=ON")
        try:
            yield connection
            connection.commit()
        except sqlite3.Error as exc:
            connection.rollback()
            raise StorageFailure(str(exc)) from exc
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    async def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        def _call() -> T:
            with self._connect() as connection:
                return func(connection)

        return await asyncio.to_thread(_call)

    # ---------------------------------------------------------------- jobs

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            seed_urls=orjson.loads(row["seed_urls_json"]),
            canonical_seed_urls=orjson.loads(row["canonical_seed_urls_json"]),
            status=JobStatus(row["status"]),
            pages_found=row["pages_found"],
            pages_processed=row["pages_processed"],
            pages_failed=row["pages_failed"],
            errors=[JobError(**item) for item in orjson.loads(row["errors_json"])],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create_job(self, seed_urls: Sequence[str], canonical_seed_urls: Sequence[str]) -> Job:
        job = Job(
            id=_new_id(),
            seed_urls=list(seed_urls),
            canonical_seed_urls=list(canonical_seed_urls),
        )

        def _insert(connection: sqlite3.Connection) -> None:
            connection.execute(
                """
                INSERT INTO jobs (
                    id, seed_urls_json, canonical_seed_urls_json, status,
                    pages_found, pages_processed, pages_failed, errors_json,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, 0, 0, '[]', ?, ?)
                """,
                (
                    job.id,
                    _dumps(job.seed_urls),
                    _dumps(job.canonical_seed_urls),
                    job.status.value,
                    _iso(job.created_at),
                    _iso(job.updated_at),
                ),
            )

        await self._run(_insert)
        LOGGER.info("job_created", job_id=job.id, seeds=job.seed_urls)
        return job

    async def update_job(self, job_id: str, **fields: Any) -> Job:
        unknown = set(fields) - set(_JOB_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "status":
                value = JobStatus(value).value
            elif name == "errors":
                value = _dumps([JobError.model_validate(item).model_dump(mode="json") for item in value])
            assignments.append(f"{_JOB_COLUMNS[name]} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(_iso(utc_now()))

        def _update(connection: sqlite3.Connection) -> Job:
            cursor = connection.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ?",
                (*params, job_id),
            )
            if cursor.rowcount == 0:
                raise StorageFailure(f"Job not found: {job_id}")
            row = connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row)

        return await self._run(_update)

    async def get_job(self, job_id: str) -> Optional[Job]:
        def _select(connection: sqlite3.Connection) -> Optional[Job]:
            row = connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

        return await self._run(_select)

    async def list_jobs(self) -> List[Job]:
        """Return every job, newest first."""

        def _select(connection: sqlite3.Connection) -> List[Job]:
            rows = connection.execute("SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC").fetchall()
            return [self._row_to_job(row) for row in rows]

        return await self._run(_select)

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job together with all of its pages."""

        def _delete(connection: sqlite3.Connection) -> bool:
            connection.execute("DELETE FROM pages WHERE job_id = ?", (job_id,))
            cursor = connection.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

        deleted = await self._run(_delete)
        LOGGER.info("job_deleted", job_id=job_id, deleted=deleted)
        return deleted

    # --------------------------------------------------------------- pages

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> Page:
        metadata = row["metadata_json"]
        return Page(
            id=row["id"],
            job_id=row["job_id"],
            url=row["url"],
            canonical_url=row["canonical_url"],
            alternate_urls=orjson.loads(row["alternate_urls_json"]),
            content=row["content"],
            content_hash=row["content_hash"],
            content_length=row["content_length"],
            html=row["html"],
            markdown=row["markdown"],
            metadata=orjson.loads(metadata) if metadata else None,
            status=PageStatus(row["status"]),
            extracted_at=row["extracted_at"],
        )

    async def get_page_by_canonical_url(self, canonical_url: str) -> Optional[Page]:
        """Global cache lookup across every job, preferring rows with stored HTML."""

        def _select(connection: sqlite3.Connection) -> Optional[Page]:
            row = connection.execute(
                """
                SELECT * FROM pages
                WHERE canonical_url = ? AND status = ?
                ORDER BY (html IS NOT NULL) DESC, extracted_at DESC, rowid DESC
                LIMIT 1
                """,
                (canonical_url, PageStatus.SUCCESS.value),
            ).fetchone()
            return self._row_to_page(row) if row else None

        return await self._run(_select)

    async def get_page_by_content_hash(self, job_id: str, content_hash: str) -> Optional[Page]:
        def _select(connection: sqlite3.Connection) -> Optional[Page]:
            row = connection.execute(
                "SELECT * FROM pages WHERE job_id = ? AND content_hash = ? ORDER BY extracted_at, rowid LIMIT 1",
                (job_id, content_hash),
            ).fetchone()
            return self._row_to_page(row) if row else None

        return await self._run(_select)

    async def save_page(
        self,
        job_id: str,
        url: str,
        canonical_url: str,
        content: str,
        status: PageStatus = PageStatus.SUCCESS,
        html: Optional[str] = None,
        content_hash: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        markdown: Optional[str] = None,
    ) -> Page:
        page = Page(
            id=_new_id(),
            job_id=job_id,
            url=url,
            canonical_url=canonical_url,
            alternate_urls=[url],
            content=content,
            content_hash=content_hash,
            html=html,
            markdown=markdown,
            metadata=metadata,
            status=PageStatus(status),
        )

        def _insert(connection: sqlite3.Connection) -> None:
            connection.execute(
                """
                INSERT INTO pages (
                    id, job_id, url, canonical_url, alternate_urls_json, content,
                    content_hash, content_length, html, markdown, metadata_json,
                    status, extracted_at
                ) VALUES (
                    :id, :job_id, :url, :canonical_url, :alternate_urls_json, :content,
                    :content_hash, :content_length, :html, :markdown, :metadata_json,
                    :status, :extracted_at
                )
                """,
                {
                    "id": page.id,
                    "job_id": page.job_id,
                    "url": page.url,
                    "canonical_url": page.canonical_url,
                    "alternate_urls_json": _dumps(page.alternate_urls),
                    "content": page.content,
                    "content_hash": page.content_hash,
                    "content_length": page.content_length,
                    "html": page.html,
                    "markdown": page.markdown,
                    "metadata_json": _dumps(page.metadata) if page.metadata is not None else None,
                    "status": page.status.value,
                    "extracted_at": _iso(page.extracted_at),
                },
            )

        await self._run(_insert)
        return page

    async def update_page_alternate_urls(self, page_id: str, new_url: str) -> Page:
        """Append ``new_url`` to the page's alternate URLs unless already present."""

        def _update(connection: sqlite3.Connection) -> Page:
            connection.execute("BEGIN IMMEDIATE")
            row = connection.execute("SELECT * FROM pages WHERE id = ?", (page_id,)).fetchone()
            if row is None:
                raise StorageFailure(f"Page not found: {page_id}")
            page = self._row_to_page(row)
            if new_url not in page.alternate_urls:
                page.alternate_urls.append(new_url)
                connection.execute(
                    "UPDATE pages SET alternate_urls_json = ? WHERE id = ?",
                    (_dumps(page.alternate_urls), page_id),
                )
            return page

        return await self._run(_update)

    async def get_pages_by_job(self, job_id: str) -> List[Page]:
        def _select(connection: sqlite3.Connection) -> List[Page]:
            rows = connection.execute(
                "SELECT * FROM pages WHERE job_id = ? ORDER BY extracted_at, rowid",
                (job_id,),
            ).fetchall()
            return [self._row_to_page(row) for row in rows]

        return await self._run(_select)

    async def search_pages(self, query: str) -> List[Page]:
        """Case-insensitive substring search over page URLs."""
        pattern = f"%{query.lower()}%"

        def _select(connection: sqlite3.Connection) -> List[Page]:
            rows = connection.execute(
                "SELECT * FROM pages WHERE lower(url) LIKE ? ORDER BY extracted_at, rowid",
                (pattern,),
            ).fetchall()
            return [self._row_to_page(row) for row in rows]

        return await self._run(_select)

    # ---------------------------------------------------------- error logs

    @staticmethod
    def _row_to_error(row: sqlite3.Row) -> ErrorLogEntry:
        return ErrorLogEntry(
            id=row["id"],
            timestamp=row["timestamp"],
            level=row["level"],
            source=row["source"],
            message=row["message"],
            stack=row["stack"],
            context=orjson.loads(row["context_json"]),
        )

    async def save_error_log(
        self,
        *,
        source: str,
        message: str,
        stack: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        level: str = "error",
    ) -> ErrorLogEntry:
        entry = ErrorLogEntry(
            id=_new_id(),
            level=level,
            source=source,
            message=message,
            stack=stack,
            context=context or {},
        )

        def _insert(connection: sqlite3.Connection) -> None:
            connection.execute(
                """
                INSERT INTO error_logs (id, timestamp, level, source, message, stack, context_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    _iso(entry.timestamp),
                    entry.level,
                    entry.source,
                    entry.message,
                    entry.stack,
                    orjson.dumps(entry.context, default=str).decode(),
                ),
            )

        await self._run(_insert)
        return entry

    async def list_error_logs(self) -> List[ErrorLogEntry]:
        def _select(connection: sqlite3.Connection) -> List[ErrorLogEntry]:
            rows = connection.execute("SELECT * FROM error_logs ORDER BY timestamp DESC, rowid DESC").fetchall()
            return [self._row_to_error(row) for row in rows]

        return await self._run(_select)

    async def count_error_logs(self) -> int:
        def _count(connection: sqlite3.Connection) -> int:
            return int(connection.execute("SELECT COUNT(*) FROM error_logs").fetchone()[0])

        return await self._run(_count)

    async def clear_error_logs(self) -> None:
        await self._run(lambda connection: connection.execute("DELETE FROM error_logs"))

    async def cleanup_old_error_logs(self, retention: timedelta = ERROR_LOG_RETENTION) -> int:
        cutoff = _iso(utc_now() - retention)

        def _delete(connection: sqlite3.Connection) -> int:
            return connection.execute("DELETE FROM error_logs WHERE timestamp < ?", (cutoff,)).rowcount

        deleted = await self._run(_delete)
        if deleted:
            LOGGER.info("error_logs_pruned", deleted=deleted)
        return deleted
