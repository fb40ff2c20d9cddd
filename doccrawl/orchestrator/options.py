"""Per-crawl options with the documented defaults and ranges."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from doccrawl.fetch.renderer import SESSION_MODES

MIN_WORKERS, MAX_WORKERS = 1, 10
MIN_HOPS, MAX_HOPS = 1, 5


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class CrawlOptions(BaseModel):
    """Options recognised by ``CrawlService.start``.

    Worker and hop counts outside their ranges are clamped rather than
    rejected, and a non-positive page limit means "unlimited".
    """

    model_config = ConfigDict(extra="ignore")

    max_workers: int = 5
    page_limit_per_seed: Optional[int] = None
    strict_path_matching: bool = True
    skip_cache: bool = False
    follow_external_links: bool = False
    max_external_hops: int = 1
    render_timeout_ms: int = Field(default=30000, gt=0)
    wait_hints: List[str] = Field(default_factory=list)
    session_mode: str = "shared"
    request_delay_ms: int = Field(default=500, ge=0)
    idle_poll_ms: int = Field(default=500, gt=0)
    pause_poll_ms: int = Field(default=1000, gt=0)
    use_sitemap: bool = True

    @field_validator("max_workers")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        return _clamp(value, MIN_WORKERS, MAX_WORKERS)

    @field_validator("max_external_hops")
    @classmethod
    def _clamp_hops(cls, value: int) -> int:
        return _clamp(value, MIN_HOPS, MAX_HOPS)

    @field_validator("page_limit_per_seed")
    @classmethod
    def _positive_limit(cls, value: Optional[int]) -> Optional[int]:
        if value is None or value <= 0:
            return None
        return value

    @field_validator("session_mode")
    @classmethod
    def _known_session_mode(cls, value: str) -> str:
        if value not in SESSION_MODES:
            raise ValueError(f"session_mode must be one of {SESSION_MODES}")
        return value

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], **overrides: Any) -> "CrawlOptions":
        """Merge ``[crawl]`` defaults from settings with non-None per-call overrides."""
        merged: Dict[str, Any] = dict(settings.get("crawl", {}))
        merged.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**merged)
