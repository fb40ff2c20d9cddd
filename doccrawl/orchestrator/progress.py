"""Progress snapshots and the sinks that receive them."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List

import structlog

LOGGER = structlog.get_logger(__name__)


@dataclass
class ProgressSnapshot:
    job_id: str
    status: str
    pages_found: int
    pages_processed: int
    pages_failed: int
    queue_size: int
    in_progress_urls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressSink = Callable[[ProgressSnapshot], Any]


class ProgressReporter:
    """Fans snapshots out to subscribed sinks.

    A sink that raises is logged and skipped so it cannot stall the worker
    that is reporting.
    """

    def __init__(self) -> None:
        self._sinks: List[ProgressSink] = []

    def subscribe(self, sink: ProgressSink) -> Callable[[], None]:
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    @property
    def sink_count(self) -> int:
        return len(self._sinks)

    def report(self, snapshot: ProgressSnapshot, *, paused: bool = False) -> None:
        if paused:
            return
        for sink in list(self._sinks):
            try:
                sink(snapshot)
            except Exception:  # noqa: BLE001
                LOGGER.exception("progress_sink_failed", job_id=snapshot.job_id)
