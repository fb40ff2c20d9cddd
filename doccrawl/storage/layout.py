"""Path helpers for the on-disk data root."""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class DataLayout:
    """Computes database, export and metrics paths inside the data root."""

    def __init__(
        self,
        *,
        root: Path,
        db_path: Optional[Path] = None,
        exports: Optional[Path] = None,
        metrics: Optional[Path] = None,
    ) -> None:
        self.root = root
        self.db_path = db_path or root / "doccrawl.db"
        self.exports = exports or root / "exports"
        self.metrics = metrics or root / "metrics"
        for path in (root, self.db_path.parent, self.exports, self.metrics):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: dict) -> "DataLayout":
        app = settings.get("app", {})
        root = Path(app.get("data_root", "data"))
        db_path = Path(app["db_path"]) if app.get("db_path") else None
        exports = Path(app["exports_dir"]) if app.get("exports_dir") else None
        return cls(root=root, db_path=db_path, exports=exports)

    def metrics_file(self, job_id: str) -> Path:
        return self.metrics / f"run_{job_id}.json"

    def export_file(self, job_id: str, fmt: str) -> Path:
        suffix = {"jsonl": "jsonl", "text": "txt", "markdown": "md"}[fmt]
        return self.exports / f"job_{job_id}.{suffix}"
