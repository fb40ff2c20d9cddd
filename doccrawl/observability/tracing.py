"""Tracing helpers for the render and save stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

_LOGGER = structlog.get_logger("doccrawl.trace")


def set_context(*, job_id: str, worker_id: Optional[int] = None) -> None:
    """Bind job and worker identifiers to every event logged from this task."""
    if worker_id is None:
        bind_contextvars(job_id=job_id)
    else:
        bind_contextvars(job_id=job_id, worker_id=worker_id)
    _LOGGER.debug("trace_context", job_id=job_id, worker_id=worker_id)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _LOGGER.debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_render_result(*, url: str, source: str, html_bytes: int, text_chars: int, elapsed_ms: int) -> None:
    _LOGGER.info(
        "render_result",
        url=url,
        source=source,
        html_bytes=html_bytes,
        text_chars=text_chars,
        elapsed_ms=elapsed_ms,
    )


def log_url_failure(*, url: str, reason: str) -> None:
    _LOGGER.warning("url_failed", url=url, reason=reason)
