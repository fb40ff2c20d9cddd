"""Pydantic models for durable crawl records."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


class PageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class JobError(BaseModel):
    """A per-URL failure recorded on the job."""

    url: str
    canonical_url: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class Job(BaseModel):
    """One crawl run."""

    id: str
    seed_urls: List[str] = Field(min_length=1)
    canonical_seed_urls: List[str]
    status: JobStatus = JobStatus.PENDING
    pages_found: int = 0
    pages_processed: int = 0
    pages_failed: int = 0
    errors: List[JobError] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Page(BaseModel):
    """One captured unit of unique content within a job."""

    id: str
    job_id: str
    url: str
    canonical_url: str
    alternate_urls: List[str] = Field(default_factory=list)
    content: str
    content_hash: Optional[str] = None
    content_length: int = 0
    html: Optional[str] = None
    markdown: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    status: PageStatus = PageStatus.SUCCESS
    extracted_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _primary_url_first(self) -> "Page":
        if not self.alternate_urls:
            self.alternate_urls = [self.url]
        elif self.alternate_urls[0] != self.url:
            rest = [item for item in self.alternate_urls if item != self.url]
            self.alternate_urls = [self.url, *rest]
        if not self.content_length:
            self.content_length = len(self.content)
        return self


class ErrorLogEntry(BaseModel):
    """Diagnostic record kept in the persistent error log."""

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    level: str = "error"
    source: str = "unknown"
    message: str = "Unknown error"
    stack: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
