"""Inline-versus-blob placement of scraped content."""
from __future__ import annotations

from typing import Any, Dict, Optional

import orjson
import structlog

from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.storage.blobs import BlobStore

LOGGER = structlog.get_logger(__name__)

DEFAULT_THRESHOLD_BYTES = 1024 * 1024

CONTENT_TYPES = {
    "markdown": "text/markdown",
    "html": "text/html",
    "raw_html": "text/html",
    "summary": "text/plain",
    "links": "application/json",
    "images": "application/json",
    "extracted_json": "application/json",
}


def encode_content(value: Any) -> bytes:
    """UTF-8 for text, JSON for structured values."""
    if isinstance(value, str):
        return value.encode("utf-8")
    return orjson.dumps(value)


def byte_length(value: Any) -> int:
    return len(encode_content(value))


class OffloadPolicy:
    """Decides, per field, whether content stays on the record or goes to the blob store."""

    def __init__(
        self,
        blobs: BlobStore,
        *,
        threshold_bytes: int = DEFAULT_THRESHOLD_BYTES,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._blobs = blobs
        self._threshold = threshold_bytes
        self._metrics = metrics or MetricsRegistry()

    @property
    def threshold_bytes(self) -> int:
        return self._threshold

    def should_offload(self, value: Any) -> bool:
        return byte_length(value) >= self._threshold

    async def place(self, field: str, value: Any) -> Dict[str, Any]:
        """Return the record update for one field: the value itself or a blob reference."""
        if field not in CONTENT_TYPES:
            raise ValueError(f"Unknown content field: {field}")
        encoded = encode_content(value)
        if len(encoded) < self._threshold:
            return {field: value}
        key = await self._blobs.put(encoded, content_type=CONTENT_TYPES[field])
        self._metrics.incr("blobs_offloaded")
        LOGGER.info("content_offloaded", field=field, bytes=len(encoded), file_id=key)
        return {f"{field}_file_id": key}
