"""Path helpers for the on-disk data layout."""
from __future__ import annotations

from pathlib import Path

from scrapecache.settings import Settings


class DataLayout:
    """Resolves where the job database, blobs and metric exports live."""

    def __init__(self, *, database: Path, blobs: Path, metrics: Path) -> None:
        self.database = database
        self.blobs = blobs
        self.metrics = metrics
        for path in (database.parent, blobs, metrics):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DataLayout":
        return cls(database=settings.database_path, blobs=settings.blob_dir, metrics=settings.metrics_dir)

    def metrics_export(self, exported_at: int) -> Path:
        """JSON file for the worker metrics snapshot taken at `exported_at` (epoch ms)."""
        return self.metrics / f"worker_{exported_at}.json"
