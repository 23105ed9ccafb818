"""Filesystem blob store for content too large to keep inline."""
from __future__ import annotations

import asyncio
import mimetypes
import uuid
from pathlib import Path
from typing import Iterable, Optional

import structlog

from scrapecache.errors import BlobNotFoundError
from scrapecache.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

_EXTENSIONS = {
    "text/markdown": ".md",
    "text/html": ".html",
    "text/plain": ".txt",
    "application/json": ".json",
    "image/png": ".png",
    "image/jpeg": ".jpg",
}


class BlobStore:
    """Key-addressed object store rooted at a directory.

    Keys are opaque to callers. Files are sharded by the first two
    characters of the key to keep directories small.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise BlobNotFoundError(key)
        return self._root / key[:2] / key

    def _new_key(self, content_type: str) -> str:
        base = content_type.split(";", 1)[0].strip().lower()
        suffix = _EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ".bin"
        return f"{uuid.uuid4().hex}{suffix}"

    async def put(self, data: bytes, *, content_type: str) -> str:
        """Store `data` and return its key."""
        key = self._new_key(content_type)
        await asyncio.to_thread(self._write, self._path(key), data)
        return key

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".partial")
        partial.write_bytes(data)
        partial.replace(target)

    async def get(self, key: str) -> bytes:
        target = self._path(key)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise BlobNotFoundError(key) from None

    async def delete(self, key: str) -> None:
        """Remove a blob; raises `BlobNotFoundError` when it is already gone."""
        target = self._path(key)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            raise BlobNotFoundError(key) from None

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def url(self, key: str) -> str | None:
        """Return a `file://` link for the blob, or None when it does not exist."""
        target = self._path(key)
        if not target.exists():
            return None
        return target.resolve().as_uri()

    def usage(self) -> dict[str, int]:
        files = [path for path in self._root.glob("*/*") if path.is_file() and not path.name.endswith(".partial")]
        return {"files": len(files), "bytes": sum(path.stat().st_size for path in files)}


async def delete_blobs(blobs: BlobStore, keys: Iterable[str], *, metrics: Optional[MetricsRegistry] = None) -> int:
    """Best-effort removal of several blobs; failures are logged, never raised."""
    deleted = 0
    for key in keys:
        try:
            await blobs.delete(key)
        except (BlobNotFoundError, OSError) as exc:
            if metrics is not None:
                metrics.incr("blob_delete_failures")
            LOGGER.warning("blob_delete_failed", file_id=key, error=str(exc))
            continue
        deleted += 1
    if metrics is not None:
        metrics.incr("blobs_deleted", deleted)
    return deleted
